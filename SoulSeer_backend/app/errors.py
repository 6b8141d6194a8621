from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


class ServiceError(HTTPException):
    status_code = 400
    code = "error"
    message = "Request failed"

    def __init__(self, message: str | None = None):
        super().__init__(status_code=self.status_code, detail=message or self.message)


class ReaderUnavailable(ServiceError):
    status_code = 409
    code = "reader_unavailable"
    message = "Reader is not available right now, try again later or pick another reader"


class InsufficientBalance(ServiceError):
    status_code = 402
    code = "insufficient_balance"
    message = "Insufficient balance, please add funds"


class SessionNotFound(ServiceError):
    status_code = 404
    code = "session_not_found"
    message = "Session not found"


class ReaderNotFound(ServiceError):
    status_code = 404
    code = "reader_not_found"
    message = "Reader not found"


class UserNotFound(ServiceError):
    status_code = 404
    code = "user_not_found"
    message = "User not found"


class Forbidden(ServiceError):
    status_code = 403
    code = "forbidden"
    message = "Forbidden"


class ActiveSessionExists(ServiceError):
    status_code = 409
    code = "active_session_exists"
    message = "You already have an active session, end it before starting another"


class InvalidRequest(ServiceError):
    status_code = 422
    code = "invalid_request"
    message = "Invalid request"


class AlreadyReviewed(ServiceError):
    status_code = 409
    code = "already_reviewed"
    message = "This session has already been reviewed"


class PayoutTooSmall(ServiceError):
    code = "payout_too_small"
    message = "Minimum payout is $15"


class OnboardingIncomplete(ServiceError):
    code = "onboarding_incomplete"
    message = "Please complete payout account setup first"


class InvalidAmount(ServiceError):
    code = "invalid_amount"
    message = "Invalid amount"


class PaymentFailed(ServiceError):
    status_code = 502
    code = "payment_failed"
    message = "Payment provider request failed, please try again"


class SettlementFailure(ServiceError):
    status_code = 503
    code = "settlement_failure"
    message = "Something went wrong ending the session, please try again"


class PayoutRecordFailure(ServiceError):
    status_code = 500
    code = "payout_record_failure"
    message = "Your payout was sent but could not be recorded yet, it will be completed on your next request"


async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})
