from django.contrib import admin

from qrpay.models import Merchant, PaymentSession, PriceRecord


@admin.register(Merchant)
class MerchantAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "email", "wallet_address", "wallet_created_at")
    search_fields = ("name", "email", "wallet_address")
    exclude = ("encrypted_private_key",)


@admin.register(PaymentSession)
class PaymentSessionAdmin(admin.ModelAdmin):
    list_display = ("reference", "merchant", "amount", "network", "status", "blockchain_tx_hash", "created_at")
    list_filter = ("status", "network")
    search_fields = ("reference", "merchant_address", "blockchain_tx_hash")
    readonly_fields = ("reference", "sequence", "qr_payload", "created_at", "updated_at")


@admin.register(PriceRecord)
class PriceRecordAdmin(admin.ModelAdmin):
    list_display = ("currency", "base_currency", "price", "source", "network", "recorded_at")
    list_filter = ("source", "network")
