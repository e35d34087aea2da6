from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse


class LedgerError(Exception):
    """Base class for credits ledger failures."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidPlanError(LedgerError):
    """Exception raised when a plan identifier is not in the plan table."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, plan_id: str):
        super().__init__(f"Invalid subscription plan '{plan_id}'")
        self.plan_id = plan_id


class InsufficientCreditsError(LedgerError):
    """Exception raised when a debit would take a balance below zero."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, user_id: str, amount: int):
        super().__init__("Insufficient credits")
        self.user_id = user_id
        self.amount = amount


class PaymentFailedError(LedgerError):
    """Exception raised when the payment processor rejects a subscription."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str):
        super().__init__(f"Payment failed: {message}")


class PersistenceUnavailableError(LedgerError):
    """Exception raised when the user store cannot be reached."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str):
        super().__init__(f"Credits store unavailable: {message}")


class AuthenticationError(HTTPException):
    """Exception raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=message,
            headers={"WWW-Authenticate": "Bearer"}
        )


async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Render ledger errors with the status code each one maps to."""
    headers = None
    if isinstance(exc, PersistenceUnavailableError):
        headers = {"Retry-After": "1"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message},
        headers=headers
    )
