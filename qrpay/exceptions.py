"""
Error taxonomy for QR payment settlement.
"""


class QRPayError(Exception):
    """Base error for settlement engine failures."""

    code = 'error'

    def __init__(self, message: str = ''):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or ''


class ValidationError(QRPayError):
    """Raised when an input fails validation."""

    code = 'validation_error'


class AddressFormatError(ValidationError):
    """Account address does not match the network format."""

    code = 'address_format'


class InvalidReferenceError(ValidationError):
    """Payment reference cannot be mapped to an on-chain identifier."""

    code = 'invalid_reference'


class MalformedCodeError(ValidationError):
    """QR payment code could not be decoded."""

    code = 'malformed_code'


class OracleUnavailableError(QRPayError):
    """Price oracle is inactive, has no price or could not be reached."""

    code = 'oracle_unavailable'


class SettlementError(QRPayError):
    """Base error for on-chain execution failures."""

    code = 'settlement_error'


class AlreadyProcessedError(SettlementError):
    """Payment already processed on-chain."""

    code = 'already_processed'


class SigningNotConfiguredError(SettlementError):
    """Signing key is not configured for this network."""

    code = 'signing_not_configured'


class SettlementSubmissionError(SettlementError):
    """Settlement transaction could not be broadcast."""

    code = 'submission_failed'


class SessionError(QRPayError):
    code = 'session_error'


class SessionNotFoundError(SessionError):
    """Payment session not found."""

    code = 'session_not_found'


class ExpiredError(SessionError):
    """Payment session has expired."""

    code = 'expired'


class AlreadyFinalizedError(SessionError):
    """Payment session was already finalized."""

    code = 'already_finalized'


class MerchantError(QRPayError):
    code = 'merchant_error'


class MerchantNotFoundError(MerchantError):
    """Merchant not found."""

    code = 'merchant_not_found'


class NoWalletError(MerchantError):
    """Merchant has no settlement wallet. Create a wallet first."""

    code = 'no_wallet'
