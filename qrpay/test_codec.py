import unittest
from decimal import Decimal

from qrpay import codec
from qrpay.exceptions import MalformedCodeError, ValidationError


MERCHANT = '0x' + 'a' * 40


class CodecRoundTripTests(unittest.TestCase):
    def test_round_trip_preserves_fields(self):
        cases = [
            (MERCHANT, Decimal('1000'), 'payment_1'),
            ('0x52a83a44aa073C0a423f914A6c824DA640ED2F6A', Decimal('12.5'), 'payment_42'),
            (MERCHANT, Decimal('0.01'), 'payment_999999'),
        ]
        for address, amount, reference in cases:
            with self.subTest(amount=amount, reference=reference):
                decoded = codec.decode(codec.encode(address, amount, reference))
                self.assertEqual(decoded.merchant_address, address)
                self.assertEqual(decoded.amount, amount)
                self.assertEqual(decoded.reference, reference)

    def test_wire_layout(self):
        wire = codec.encode(MERCHANT, 1000, 'payment_1')

        self.assertEqual(wire, f'2642{MERCHANT}54041000' + '6209payment_1')

    def test_amount_has_no_exponent_or_trailing_zeros(self):
        self.assertEqual(codec.format_amount(Decimal('1E+3')), '1000')
        self.assertEqual(codec.format_amount(Decimal('12.500')), '12.5')
        self.assertEqual(codec.format_amount(Decimal('1000.00')), '1000')

    def test_unknown_tags_are_ignored(self):
        wire = '0002ok' + codec.encode(MERCHANT, 50, 'payment_7') + '9903xyz'

        decoded = codec.decode(wire)

        self.assertEqual(decoded.reference, 'payment_7')
        self.assertEqual(decoded.amount, Decimal('50'))


class CodecDecodeErrorTests(unittest.TestCase):
    def test_missing_amount_tag(self):
        wire = f'2642{MERCHANT}' + '6209payment_1'

        with self.assertRaises(MalformedCodeError) as ctx:
            codec.decode(wire)
        self.assertIn('54', ctx.exception.message)

    def test_missing_reference_tag(self):
        with self.assertRaises(MalformedCodeError):
            codec.decode(f'2642{MERCHANT}54041000')

    def test_truncated_value(self):
        wire = codec.encode(MERCHANT, 1000, 'payment_1')

        with self.assertRaises(MalformedCodeError):
            codec.decode(wire[:-3])

    def test_truncated_header(self):
        wire = codec.encode(MERCHANT, 1000, 'payment_1')

        with self.assertRaises(MalformedCodeError):
            codec.decode(wire + '62')

    def test_non_numeric_length(self):
        with self.assertRaises(MalformedCodeError):
            codec.decode('26xx' + MERCHANT)

    def test_invalid_amount(self):
        wire = f'2642{MERCHANT}5403abc' + '6209payment_1'

        with self.assertRaises(MalformedCodeError):
            codec.decode(wire)

    def test_non_positive_amount(self):
        wire = f'2642{MERCHANT}54010' + '6209payment_1'

        with self.assertRaises(MalformedCodeError):
            codec.decode(wire)

    def test_empty_input(self):
        with self.assertRaises(MalformedCodeError):
            codec.decode('')

    def test_decode_errors_are_validation_errors(self):
        with self.assertRaises(ValidationError):
            codec.decode('garbage')


class CodecEncodeValidationTests(unittest.TestCase):
    def test_rejects_short_address(self):
        with self.assertRaises(ValidationError):
            codec.encode('0x' + 'a' * 39, 1000, 'payment_1')

    def test_rejects_non_positive_amount(self):
        for amount in (0, -5, 'nan'):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError):
                    codec.encode(MERCHANT, amount, 'payment_1')

    def test_rejects_empty_reference(self):
        with self.assertRaises(ValidationError):
            codec.encode(MERCHANT, 1000, '')

    def test_rejects_oversized_value(self):
        with self.assertRaises(ValidationError):
            codec.encode(MERCHANT, 1000, 'payment_' + '1' * 100)


class QRImageTests(unittest.TestCase):
    def test_renders_png_data_uri(self):
        image = codec.render_qr_image(codec.encode(MERCHANT, 1000, 'payment_1'))

        self.assertTrue(image.startswith('data:image/png;base64,'))
        self.assertGreater(len(image), 100)


if __name__ == '__main__':
    unittest.main()
