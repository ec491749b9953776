from fastapi import status


class PointError(Exception):
    """Base error for point transactions, carrying the HTTP status it maps to."""

    kind = "PointError"

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    ):
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    @property
    def code(self) -> str:
        return str(self.status_code)


class PointValidationError(PointError):
    """Rejected by the point policy; the balance was left untouched."""

    def __init__(self, message: str):
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST)


class BelowMinChargeError(PointValidationError):
    kind = "BelowMin"


class ChargeStepError(PointValidationError):
    kind = "NotStep"


class AboveMaxChargeError(PointValidationError):
    kind = "AboveMax"


class TotalExceededError(PointValidationError):
    kind = "TotalExceeded"


class NegativeUseError(PointValidationError):
    kind = "NegativeUse"


class InsufficientPointError(PointValidationError):
    kind = "Insufficient"


class PointInterruptedError(PointError):
    kind = "Interrupted"

    def __init__(self, message: str = "Transaction was interrupted while waiting for the user lock"):
        super().__init__(message)


class PointInternalError(PointError):
    kind = "InternalFailure"

    def __init__(self, message: str = "Point store failure"):
        super().__init__(message)


class PointTimeoutError(PointError):
    kind = "Timeout"

    def __init__(self, message: str = "Point transaction did not finish in time"):
        super().__init__(message)
