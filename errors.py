from typing import Optional


class APIError(Exception):
    status_code = 500
    message = "Internal error"

    def __init__(self, message: Optional[str] = None, error: Optional[str] = None):
        self.message = message or self.message
        self.error = error
        super().__init__(self.message)

    def to_dict(self):
        body = {"message": self.message}
        if self.error is not None:
            body["error"] = self.error
        return body


class NotFound(APIError):
    status_code = 404
    message = "Not found"


class Unauthorized(APIError):
    status_code = 401
    message = "Could not validate credentials"


class Forbidden(APIError):
    status_code = 403
    message = "Admins only"


class ValidationFailure(APIError):
    status_code = 400
    message = "Invalid request"


class Conflict(APIError):
    status_code = 409
    message = "Conflict"


class StoreFailure(APIError):
    status_code = 500
    message = "Database error"


class PointsAccrualFailure(APIError):
    """The order was written but its loyalty credit could not be applied."""

    status_code = 503

    def __init__(self, order_id: str, rolled_back: bool, error: Optional[str] = None):
        self.order_id = order_id
        self.rolled_back = rolled_back
        if rolled_back:
            message = "Order rolled back: loyalty points could not be credited"
        else:
            message = "Order saved, loyalty points pending reconciliation"
        super().__init__(message, error)

    def to_dict(self):
        body = super().to_dict()
        body["order_id"] = self.order_id
        body["rolled_back"] = self.rolled_back
        return body


class PaymentProviderError(APIError):
    status_code = 502
    message = "Payment session creation failed"
