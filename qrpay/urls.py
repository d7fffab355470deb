from django.urls import path

from qrpay.views import (
    CreatePaymentView,
    CurrentPriceView,
    GatewayInfoView,
    MerchantPaymentsView,
    MerchantStatsView,
    OracleStatusView,
    PaymentStatusView,
    PriceHistoryView,
    ScanPaymentView,
    SupportedNetworksView,
)

app_name = 'qrpay'

urlpatterns = [
    path('networks', SupportedNetworksView.as_view(), name='networks'),
    path('networks/<str:network>/gateway', GatewayInfoView.as_view(), name='gateway-info'),
    path('payments', CreatePaymentView.as_view(), name='create-payment'),
    path('payments/scan', ScanPaymentView.as_view(), name='scan-payment'),
    path('payments/<str:reference>', PaymentStatusView.as_view(), name='payment-status'),
    path('merchants/<int:merchant_id>/payments', MerchantPaymentsView.as_view(), name='merchant-payments'),
    path('merchants/<int:merchant_id>/stats', MerchantStatsView.as_view(), name='merchant-stats'),
    path('oracle/<str:network>/status', OracleStatusView.as_view(), name='oracle-status'),
    path('prices/current', CurrentPriceView.as_view(), name='current-price'),
    path('prices/history', PriceHistoryView.as_view(), name='price-history'),
]
