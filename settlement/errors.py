class SettlementError(Exception):
    """Base for failures reported to the caller as {"success": false, ...}."""

    status_code = 400
    can_retry = False

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(SettlementError):
    status_code = 400


class RetryLimitExceeded(ValidationError):
    pass


class UnauthorizedError(SettlementError):
    status_code = 403


class NotFoundError(SettlementError):
    status_code = 404


class ConflictError(SettlementError):
    status_code = 409


class SourceProcessingError(SettlementError):
    status_code = 402


class CodeAllocationError(SettlementError):
    status_code = 503


class CertificateNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__("Gift certificate not found")


class CertificateExpiredError(SourceProcessingError):
    def __init__(self):
        super().__init__("Gift certificate has expired")


class CertificateExhaustedError(SourceProcessingError):
    def __init__(self):
        super().__init__("Gift certificate has no remaining balance")


class IllegalTransitionError(RuntimeError):
    """A payment status change outside the state machine; always a bug."""
