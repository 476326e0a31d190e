"""Error taxonomy for checkout and the order lifecycle.

Every error renders as ``{'error': message, ...}`` with its own HTTP status,
the same shape the storefront clients already parse.
"""


class StoreError(Exception):
    status_code = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    def to_dict(self):
        return {'error': self.message, **self.details}


class ValidationError(StoreError):
    """malformed cart, missing address, bad input - nothing was written"""
    status_code = 400


class CouponError(ValidationError):
    pass


class GiftLockedError(ValidationError):
    pass


class PaymentMismatchError(ValidationError):
    pass


class InsufficientStockError(StoreError):
    status_code = 400

    def __init__(self, sku, size, requested, available, product_id=None):
        super().__init__(
            f'Insufficient stock for {sku} (Size: {size}). Available: {available}',
            sku=sku, size=size, requested=requested, available=available,
            productId=product_id,
        )
        self.sku = sku
        self.size = size
        self.requested = requested
        self.available = available


class SignatureError(StoreError):
    """gateway signature mismatch. never retried"""
    status_code = 400


class AuthError(StoreError):
    status_code = 403


class NotFoundError(StoreError):
    status_code = 404


class StateTransitionError(StoreError):
    status_code = 409

    def __init__(self, message, current=None, requested=None):
        super().__init__(message, current=current, requested=requested)
        self.current = current
        self.requested = requested


class UpstreamBookingError(StoreError):
    """carrier API failed; the order keeps its previous status"""
    status_code = 502


class UpstreamPaymentError(StoreError):
    status_code = 502


class DatabaseUnavailable(StoreError):
    status_code = 503

    def __init__(self, message='Database connection failed', **details):
        super().__init__(message, **details)


class CheckoutTimeoutError(StoreError):
    status_code = 504
