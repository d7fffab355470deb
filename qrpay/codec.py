"""
QR payment code codec.

The wire format is a sequence of tag-length-value records, each one
``TT`` (two character tag) + ``LL`` (two digit decimal length) + value.
Three tags are required: merchant address, amount and payment reference.
Unknown tags are skipped on decode so newer codes stay readable.
"""
import base64
import io
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Union

import qrcode

from .exceptions import MalformedCodeError, ValidationError


TAG_MERCHANT_ADDRESS = '26'
TAG_AMOUNT = '54'
TAG_REFERENCE = '62'

REQUIRED_TAGS = (TAG_MERCHANT_ADDRESS, TAG_AMOUNT, TAG_REFERENCE)

TAG_SIZE = 2
LENGTH_SIZE = 2
MAX_VALUE_LENGTH = 99

ADDRESS_PATTERN = re.compile(r'^0x[0-9a-fA-F]{40}$')


@dataclass(frozen=True)
class PaymentCode:
    """Decoded contents of a QR payment code."""
    merchant_address: str
    amount: Decimal
    reference: str


def is_account_address(address) -> bool:
    return isinstance(address, str) and bool(ADDRESS_PATTERN.match(address))


def format_amount(amount: Decimal) -> str:
    """Shortest exact decimal rendering, never in exponent notation."""
    text = format(amount.normalize(), 'f')
    if '.' in text:
        text = text.rstrip('0').rstrip('.')
    return text


def _to_decimal(amount) -> Decimal:
    if isinstance(amount, float):
        amount = repr(amount)
    return Decimal(amount)


def _record(tag: str, value: str) -> str:
    if len(value) > MAX_VALUE_LENGTH:
        raise ValidationError(
            f'Value for tag {tag} exceeds {MAX_VALUE_LENGTH} characters.')
    return f'{tag}{len(value):02d}{value}'


def encode(merchant_address: str, amount: Union[Decimal, int, float, str], reference: str) -> str:
    """
    Encode a payment into its QR wire string.

    Raises:
        ValidationError: if the address, amount or reference is invalid
    """
    if not is_account_address(merchant_address):
        raise ValidationError(f'Invalid merchant address: {merchant_address}')
    try:
        value = _to_decimal(amount)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f'Invalid amount: {amount}') from exc
    if not value.is_finite() or value <= 0:
        raise ValidationError('Amount must be positive.')
    if not reference or not str(reference).strip():
        raise ValidationError('Payment reference is required.')

    return ''.join((
        _record(TAG_MERCHANT_ADDRESS, merchant_address),
        _record(TAG_AMOUNT, format_amount(value)),
        _record(TAG_REFERENCE, str(reference)),
    ))


def _parse_records(wire: str) -> Dict[str, str]:
    records: Dict[str, str] = {}
    position = 0
    header = TAG_SIZE + LENGTH_SIZE
    while position < len(wire):
        if position + header > len(wire):
            raise MalformedCodeError(
                f'Truncated record header at position {position}.')
        tag = wire[position:position + TAG_SIZE]
        length_text = wire[position + TAG_SIZE:position + header]
        if not (length_text.isascii() and length_text.isdigit()):
            raise MalformedCodeError(
                f'Invalid length {length_text!r} for tag {tag}.')
        start = position + header
        end = start + int(length_text)
        if end > len(wire):
            raise MalformedCodeError(f'Truncated value for tag {tag}.')
        if tag in records and tag in REQUIRED_TAGS:
            raise MalformedCodeError(f'Duplicate tag {tag}.')
        records[tag] = wire[start:end]
        position = end
    return records


def decode(wire: str) -> PaymentCode:
    """
    Decode a QR wire string.

    Raises:
        MalformedCodeError: if the structure is truncated, a required tag is
            missing or a field does not parse
    """
    if not isinstance(wire, str) or not wire:
        raise MalformedCodeError('Empty payment code.')

    records = _parse_records(wire)
    missing = [tag for tag in REQUIRED_TAGS if tag not in records]
    if missing:
        raise MalformedCodeError(
            f'Missing required tags: {", ".join(missing)}')

    merchant_address = records[TAG_MERCHANT_ADDRESS]
    if not is_account_address(merchant_address):
        raise MalformedCodeError(
            f'Invalid merchant address: {merchant_address}')

    try:
        amount = Decimal(records[TAG_AMOUNT])
    except InvalidOperation as exc:
        raise MalformedCodeError(
            f'Invalid amount: {records[TAG_AMOUNT]}') from exc
    if not amount.is_finite() or amount <= 0:
        raise MalformedCodeError(f'Invalid amount: {records[TAG_AMOUNT]}')

    reference = records[TAG_REFERENCE]
    if not reference:
        raise MalformedCodeError('Empty payment reference.')

    return PaymentCode(
        merchant_address=merchant_address,
        amount=amount,
        reference=reference,
    )


def render_qr_image(wire: str) -> str:
    """Render the wire string as a ``data:image/png;base64,...`` URI."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(wire)
    qr.make(fit=True)

    img = qr.make_image(fill_color='black', back_color='white')
    buf = io.BytesIO()
    img.save(buf, format='PNG')

    b64 = base64.b64encode(buf.getvalue()).decode()
    return f'data:image/png;base64,{b64}'
