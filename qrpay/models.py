from django.db import models
from django.utils import timezone


class Merchant(models.Model):
    name = models.CharField(max_length=255)
    email = models.EmailField(unique=True, blank=True, null=True)
    # EVM accounts are 42 chars (0x + 40 hex)
    wallet_address = models.CharField(max_length=42, blank=True, null=True)
    encrypted_private_key = models.TextField(blank=True, null=True)
    public_key = models.CharField(max_length=132, blank=True, null=True)
    wallet_created_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self) -> str:
        return self.name

    @property
    def has_wallet(self) -> bool:
        return bool(self.wallet_address)


class PaymentSession(models.Model):
    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        PAID = 'PAID', 'Paid'
        EXPIRED = 'EXPIRED', 'Expired'
        FAILED = 'FAILED', 'Failed'

    reference = models.CharField(max_length=64, unique=True)
    sequence = models.PositiveBigIntegerField(unique=True)
    merchant = models.ForeignKey(
        Merchant, on_delete=models.PROTECT, related_name='payments')
    merchant_address = models.CharField(max_length=42)
    amount = models.DecimalField(max_digits=18, decimal_places=2)
    currency = models.CharField(max_length=8, default='ARS')
    concept = models.CharField(max_length=255, default='Pago QR')
    network = models.CharField(max_length=32)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.PENDING,
    )
    qr_payload = models.CharField(max_length=255)
    quoted_crypto_amount = models.DecimalField(
        max_digits=30, decimal_places=6, blank=True, null=True)
    quoted_rate = models.DecimalField(
        max_digits=30, decimal_places=6, blank=True, null=True)
    quote_source = models.CharField(max_length=32, blank=True, default='')
    # EVM tx hash is 66 chars (0x + 64 hex)
    blockchain_tx_hash = models.CharField(max_length=66, blank=True, null=True)
    block_number = models.PositiveBigIntegerField(blank=True, null=True)
    gas_used = models.PositiveBigIntegerField(blank=True, null=True)
    explorer_url = models.CharField(max_length=255, blank=True, default='')
    failure_reason = models.TextField(blank=True, default='')
    expires_at = models.DateTimeField()
    paid_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-sequence']
        indexes = [
            models.Index(fields=['merchant', '-created_at'], name='qrpay_session_merchant_idx'),
            models.Index(fields=['status'], name='qrpay_session_status_idx'),
        ]

    def __str__(self) -> str:
        return f'{self.reference} ({self.status})'

    def is_expired(self, now=None) -> bool:
        return (now or timezone.now()) > self.expires_at


class PaymentSequence(models.Model):
    """Single-row counter holding the highest allocated payment sequence."""
    value = models.PositiveBigIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)


class PriceRecord(models.Model):
    currency = models.CharField(max_length=8)
    base_currency = models.CharField(max_length=8, default='ARS')
    price = models.DecimalField(max_digits=30, decimal_places=6)
    source = models.CharField(max_length=32)
    network = models.CharField(max_length=32, blank=True, default='')
    recorded_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['-recorded_at']
        indexes = [
            models.Index(
                fields=['currency', 'base_currency', '-recorded_at'],
                name='qrpay_price_pair_idx',
            ),
        ]
