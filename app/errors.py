from typing import Optional

GENERIC_RETRY_MESSAGE = "Network error. Please try again."


class PaymentServiceError(Exception):
    status_code = 500
    detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail

    def to_dict(self) -> dict:
        return {"error": self.detail}


class PaymentValidationError(PaymentServiceError):
    status_code = 400
    detail = "Invalid payment request"


class PaymentNotFoundError(PaymentServiceError):
    status_code = 404
    detail = "Payment not found"


class PaymentConflictError(PaymentServiceError):
    status_code = 409
    detail = "Payment is not in a state that allows this operation"


class AlreadyRefundedError(PaymentConflictError):
    detail = "This capture has already been refunded"

    def __init__(self, refund_id: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(detail)
        self.refund_id = refund_id

    def to_dict(self) -> dict:
        return {"error": self.detail, "refund_id": self.refund_id}


class ProviderUnavailableError(PaymentServiceError):
    """The payment provider failed after retries; callers may try again."""

    status_code = 503
    detail = GENERIC_RETRY_MESSAGE

    def __init__(self, payment_id: Optional[str] = None):
        super().__init__()
        self.payment_id = payment_id

    def to_dict(self) -> dict:
        body = {"error": self.detail}
        if self.payment_id:
            body["payment_id"] = self.payment_id
        return body
