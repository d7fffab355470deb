import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Merchant",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("email", models.EmailField(blank=True, max_length=254, null=True, unique=True)),
                ("wallet_address", models.CharField(blank=True, max_length=42, null=True)),
                ("encrypted_private_key", models.TextField(blank=True, null=True)),
                ("public_key", models.CharField(blank=True, max_length=132, null=True)),
                ("wallet_created_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="PaymentSequence",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("value", models.PositiveBigIntegerField(default=0)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name="PriceRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("currency", models.CharField(max_length=8)),
                ("base_currency", models.CharField(default="ARS", max_length=8)),
                ("price", models.DecimalField(decimal_places=6, max_digits=30)),
                ("source", models.CharField(max_length=32)),
                ("network", models.CharField(blank=True, default="", max_length=32)),
                ("recorded_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "ordering": ["-recorded_at"],
                "indexes": [
                    models.Index(
                        fields=["currency", "base_currency", "-recorded_at"],
                        name="qrpay_price_pair_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentSession",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("reference", models.CharField(max_length=64, unique=True)),
                ("sequence", models.PositiveBigIntegerField(unique=True)),
                ("merchant_address", models.CharField(max_length=42)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=18)),
                ("currency", models.CharField(default="ARS", max_length=8)),
                ("concept", models.CharField(default="Pago QR", max_length=255)),
                ("network", models.CharField(max_length=32)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("PAID", "Paid"),
                            ("EXPIRED", "Expired"),
                            ("FAILED", "Failed"),
                        ],
                        default="PENDING",
                        max_length=16,
                    ),
                ),
                ("qr_payload", models.CharField(max_length=255)),
                ("quoted_crypto_amount", models.DecimalField(blank=True, decimal_places=6, max_digits=30, null=True)),
                ("quoted_rate", models.DecimalField(blank=True, decimal_places=6, max_digits=30, null=True)),
                ("quote_source", models.CharField(blank=True, default="", max_length=32)),
                ("blockchain_tx_hash", models.CharField(blank=True, max_length=66, null=True)),
                ("block_number", models.PositiveBigIntegerField(blank=True, null=True)),
                ("gas_used", models.PositiveBigIntegerField(blank=True, null=True)),
                ("explorer_url", models.CharField(blank=True, default="", max_length=255)),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("expires_at", models.DateTimeField()),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "merchant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="qrpay.merchant",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-sequence"],
                "indexes": [
                    models.Index(fields=["merchant", "-created_at"], name="qrpay_session_merchant_idx"),
                    models.Index(fields=["status"], name="qrpay_session_status_idx"),
                ],
            },
        ),
    ]
