import unittest

from cryptography.fernet import Fernet
from django.test import override_settings
from eth_account import Account

from qrpay.exceptions import QRPayError
from qrpay.wallets import WalletCipher, generate_wallet


class GenerateWalletTests(unittest.TestCase):
    def test_generated_key_controls_address(self):
        wallet = generate_wallet()

        self.assertEqual(len(wallet.address), 42)
        self.assertEqual(Account.from_key(wallet.private_key).address, wallet.address)
        self.assertTrue(wallet.public_key.startswith('0x'))

    def test_repr_hides_private_key(self):
        wallet = generate_wallet()

        self.assertNotIn(wallet.private_key[2:], repr(wallet))


class WalletCipherTests(unittest.TestCase):
    def test_round_trip_with_passphrase(self):
        cipher = WalletCipher('correct horse battery staple')
        token = cipher.encrypt('0xdeadbeef')

        self.assertNotIn('deadbeef', token)
        self.assertEqual(cipher.decrypt(token), '0xdeadbeef')

    def test_accepts_fernet_key(self):
        key = Fernet.generate_key().decode()
        token = WalletCipher(key).encrypt('secret')

        self.assertEqual(Fernet(key.encode()).decrypt(token.encode()), b'secret')

    def test_wrong_secret_cannot_decrypt(self):
        token = WalletCipher('first').encrypt('secret')

        with self.assertRaises(QRPayError):
            WalletCipher('second').decrypt(token)

    @override_settings(QRPAY_WALLET_ENCRYPTION_KEY='')
    def test_missing_secret(self):
        with self.assertRaises(QRPayError):
            WalletCipher()

    @override_settings(QRPAY_WALLET_ENCRYPTION_KEY='from-settings')
    def test_reads_secret_from_settings(self):
        token = WalletCipher().encrypt('secret')

        self.assertEqual(WalletCipher('from-settings').decrypt(token), 'secret')


if __name__ == '__main__':
    unittest.main()
