"""
HTTP endpoints for QR payment sessions.
"""
import traceback
from decimal import Decimal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from qrpay import exceptions
from qrpay.engine import SettlementEngine
from qrpay.networks import Network
from qrpay.services import get_price_service, get_settlement_engine


ERROR_STATUS = {
    exceptions.MerchantNotFoundError: status.HTTP_404_NOT_FOUND,
    exceptions.SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    exceptions.NoWalletError: status.HTTP_400_BAD_REQUEST,
    exceptions.ExpiredError: status.HTTP_410_GONE,
    exceptions.AlreadyFinalizedError: status.HTTP_409_CONFLICT,
    exceptions.AlreadyProcessedError: status.HTTP_409_CONFLICT,
    exceptions.ValidationError: status.HTTP_400_BAD_REQUEST,
    exceptions.OracleUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    exceptions.SigningNotConfiguredError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    exceptions.SettlementError: status.HTTP_502_BAD_GATEWAY,
}


class CreatePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    merchant_id: int = Field(alias='merchantId')
    amount: Decimal = Field(alias='amountARS', gt=0)
    concept: str = Field(default='Pago QR', max_length=255)
    network: str = 'polygon'


class ScanPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    qr_data: str = Field(alias='qrData', min_length=1)


def _parse(model, data):
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        logger.debug('pydantic validation failed: {}', exc)
        fields = ', '.join(
            '.'.join(str(part) for part in error['loc']) for error in exc.errors())
        raise exceptions.ValidationError(f'Invalid request fields: {fields}') from exc


def _error_response(exc: exceptions.QRPayError) -> Response:
    http_status = status.HTTP_400_BAD_REQUEST
    for error_class in type(exc).__mro__:
        if error_class in ERROR_STATUS:
            http_status = ERROR_STATUS[error_class]
            break
    return Response(
        {
            'success': False,
            'error': exc.message,
            'code': exc.code,
        },
        status=http_status,
    )


def _unexpected_response(context: str, exc: Exception) -> Response:
    logger.error('{} error: {}', context, exc)
    logger.error(traceback.format_exc())
    return Response(
        {
            'success': False,
            'error': f'{context} error: {exc}',
            'code': 'internal_error',
        },
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


class SupportedNetworksView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, *args, **kwargs):
        networks = [
            {'network': network, 'currency': 'ARS', 'targetCrypto': 'USDC'}
            for network in get_settlement_engine().supported_networks()
        ]
        return Response({'networks': networks}, status=status.HTTP_200_OK)


class CreatePaymentView(APIView):
    """
    Generate a payment QR for a merchant.
    """
    authentication_classes: list = []
    permission_classes: list = []

    def post(self, request, *args, **kwargs):
        try:
            body = _parse(CreatePaymentRequest, request.data)
            created = get_settlement_engine().create_session(
                merchant_id=body.merchant_id,
                amount=body.amount,
                concept=body.concept,
                network=body.network,
            )
        except exceptions.QRPayError as exc:
            logger.info('payment QR generation rejected: {}', exc.message)
            return _error_response(exc)
        except Exception as exc:
            return _unexpected_response('Payment QR generation', exc)

        return Response(
            {
                'success': True,
                'qrCodeImage': created.qr_image,
                'tlvData': created.wire,
                'paymentData': created.payment,
            },
            status=status.HTTP_201_CREATED,
        )


class ScanPaymentView(APIView):
    """
    Scan a payment QR and settle it on the session's network.
    """
    authentication_classes: list = []
    permission_classes: list = []

    def post(self, request, *args, **kwargs):
        try:
            body = _parse(ScanPaymentRequest, request.data)
            result = get_settlement_engine().scan(body.qr_data)
        except exceptions.QRPayError as exc:
            logger.info('payment scan rejected: {}', exc.message)
            return _error_response(exc)
        except Exception as exc:
            return _unexpected_response('Payment scan', exc)

        return Response(result.to_dict(), status=status.HTTP_200_OK)


class PaymentStatusView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, reference: str, *args, **kwargs):
        try:
            session = get_settlement_engine().get_session(reference)
        except exceptions.QRPayError as exc:
            return _error_response(exc)
        return Response(
            {'success': True, 'paymentData': SettlementEngine.describe(session)},
            status=status.HTTP_200_OK,
        )


class MerchantPaymentsView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, merchant_id: int, *args, **kwargs):
        try:
            limit = min(max(int(request.query_params.get('limit', 50)), 1), 200)
        except ValueError:
            return _error_response(exceptions.ValidationError('limit must be an integer.'))
        try:
            sessions = get_settlement_engine().merchant_history(merchant_id, limit=limit)
        except exceptions.QRPayError as exc:
            return _error_response(exc)
        return Response(
            {'success': True, 'payments': [SettlementEngine.describe(s) for s in sessions]},
            status=status.HTTP_200_OK,
        )


class MerchantStatsView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, merchant_id: int, *args, **kwargs):
        try:
            stats = get_settlement_engine().merchant_stats(merchant_id)
        except exceptions.QRPayError as exc:
            return _error_response(exc)
        return Response({'success': True, 'stats': stats}, status=status.HTTP_200_OK)


class OracleStatusView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, network: str, *args, **kwargs):
        try:
            oracle = get_price_service().oracle_for(Network.parse(network))
        except exceptions.QRPayError as exc:
            return _error_response(exc)
        return Response(oracle.status(), status=status.HTTP_200_OK)


class GatewayInfoView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, network: str, *args, **kwargs):
        try:
            info = get_settlement_engine().handler_for(network).contract_info()
        except exceptions.QRPayError as exc:
            logger.warning('gateway info unavailable for {}: {}', network, exc.message)
            return _error_response(exc)
        return Response(
            {
                'network': info['network'],
                'gatewayAddress': info['gateway_address'],
                'admin': info['admin'],
                'oracle': info['oracle'],
                'tokenAddress': info['token_address'],
                'signerAddress': info['signer_address'],
            },
            status=status.HTTP_200_OK,
        )


class CurrentPriceView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, *args, **kwargs):
        currency = request.query_params.get('currency', 'USDC').upper()
        try:
            snapshot = get_price_service().get_current_price(currency, 'ARS')
        except exceptions.QRPayError as exc:
            logger.warning('current price unavailable: {}', exc.message)
            return _error_response(exc)
        return Response(
            {
                'currency': snapshot.currency,
                'baseCurrency': snapshot.base_currency,
                'price': str(snapshot.price),
                'source': snapshot.source,
                'timestamp': snapshot.timestamp.isoformat(),
            },
            status=status.HTTP_200_OK,
        )


class PriceHistoryView(APIView):
    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, *args, **kwargs):
        currency = request.query_params.get('currency', 'USDC').upper()
        try:
            hours = min(max(int(request.query_params.get('hours', 24)), 1), 24 * 30)
        except ValueError:
            return _error_response(exceptions.ValidationError('hours must be an integer.'))
        records = get_price_service().price_history(currency, 'ARS', hours=hours)
        return Response(
            {
                'prices': [
                    {
                        'price': str(record.price),
                        'source': record.source,
                        'network': record.network,
                        'recordedAt': record.recorded_at.isoformat(),
                    }
                    for record in records
                ],
            },
            status=status.HTTP_200_OK,
        )
