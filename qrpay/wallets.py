"""
Merchant wallet custody: key generation and encryption at rest.
"""
import base64
import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.utils import timezone
from eth_account import Account
from eth_keys import keys
from loguru import logger

from .exceptions import QRPayError, ValidationError
from .models import Merchant


@dataclass(frozen=True)
class GeneratedWallet:
    address: str
    private_key: str
    public_key: str
    created_at: datetime

    def __repr__(self) -> str:
        return f'GeneratedWallet(address={self.address!r})'


def generate_wallet() -> GeneratedWallet:
    """Create a new EVM account usable on every supported network."""
    account = Account.create()
    public_key = keys.PrivateKey(bytes(account.key)).public_key.to_hex()
    logger.info('wallet generated: {}...', account.address[:20])
    return GeneratedWallet(
        address=account.address,
        private_key='0x' + bytes(account.key).hex(),
        public_key=public_key,
        created_at=timezone.now(),
    )


class WalletCipher:
    """Symmetric encryption of private keys (Fernet)."""

    def __init__(self, secret: Optional[str] = None):
        if secret is None:
            secret = getattr(settings, 'QRPAY_WALLET_ENCRYPTION_KEY', '')
        if not secret:
            raise QRPayError('QRPAY_WALLET_ENCRYPTION_KEY is not configured.')
        self._fernet = Fernet(self._derive_key(secret))

    @staticmethod
    def _derive_key(secret: str) -> bytes:
        # Accept a ready Fernet key; otherwise stretch the passphrase to 32 bytes.
        try:
            Fernet(secret.encode())
            return secret.encode()
        except (ValueError, TypeError):
            digest = hashlib.sha256(secret.encode('utf-8')).digest()
            return base64.urlsafe_b64encode(digest)

    def encrypt(self, private_key: str) -> str:
        return self._fernet.encrypt(private_key.encode('utf-8')).decode('ascii')

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode('ascii')).decode('utf-8')
        except InvalidToken as exc:
            raise QRPayError('Unable to decrypt wallet key.') from exc


def provision_wallet(merchant: Merchant, cipher: Optional[WalletCipher] = None, rotate: bool = False) -> GeneratedWallet:
    """
    Assign a fresh settlement wallet to ``merchant``.

    Raises:
        ValidationError: if the merchant already has a wallet and ``rotate`` is False
    """
    if merchant.has_wallet and not rotate:
        raise ValidationError(
            f'Merchant {merchant.pk} already has a wallet: {merchant.wallet_address}')

    cipher = cipher or WalletCipher()
    wallet = generate_wallet()
    previous = merchant.wallet_address

    merchant.wallet_address = wallet.address
    merchant.encrypted_private_key = cipher.encrypt(wallet.private_key)
    merchant.public_key = wallet.public_key
    merchant.wallet_created_at = wallet.created_at
    merchant.save(update_fields=[
        'wallet_address', 'encrypted_private_key', 'public_key',
        'wallet_created_at', 'updated_at',
    ])

    if previous:
        logger.info('wallet rotated for merchant {}: {} -> {}',
                    merchant.pk, previous, wallet.address)
    else:
        logger.info('wallet saved for merchant {}: {}', merchant.pk, wallet.address)
    return wallet


def merchant_private_key(merchant: Merchant, cipher: Optional[WalletCipher] = None) -> Optional[str]:
    if not merchant.encrypted_private_key:
        return None
    return (cipher or WalletCipher()).decrypt(merchant.encrypted_private_key)
