"""
Business errors raised by the order core.

Every error is recoverable at the call site: it describes a rejected
operation, not a crash. ``context`` carries what the caller needs to explain
the rejection (current status, the precondition that failed, ids).
"""


class OrderError(Exception):
    status_code = 400
    code = "order_error"

    def __init__(self, message, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self):
        return {"error": self.message, "code": self.code, **self.context}


class InvalidCartError(OrderError):
    code = "invalid_cart"


class InvalidAddressError(OrderError):
    code = "invalid_address"


class InsufficientStockError(OrderError):
    status_code = 409
    code = "insufficient_stock"


class IllegalTransitionError(OrderError):
    status_code = 409
    code = "illegal_transition"


class AlreadyProcessedError(OrderError):
    status_code = 409
    code = "already_processed"


class ConcurrentModificationError(OrderError):
    status_code = 409
    code = "concurrent_modification"


class OrderNotFoundError(OrderError):
    status_code = 404
    code = "order_not_found"


class OrderNumberCollisionError(OrderError):
    status_code = 503
    code = "order_number_collision"


class LedgerInvariantError(OrderError):
    status_code = 500
    code = "ledger_invariant"
