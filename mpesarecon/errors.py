class CallbackError(Exception):
    """A callback we answer with an error status instead of processing."""
    status_code = 500
    result_desc = "Internal Server Error"

    def __init__(self, message: str = "", result_desc: str | None = None):
        super().__init__(message or self.result_desc)
        if result_desc is not None:
            self.result_desc = result_desc


class CallbackAuthError(CallbackError):
    status_code = 403
    result_desc = "Invalid secret"


class MalformedCallback(CallbackError):
    status_code = 400
    result_desc = "Invalid callback data"


class ReconcileFault(CallbackError):
    """The atomic unit was rolled back; the provider should redeliver."""
    status_code = 500


class StockInsufficient(ReconcileFault):
    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ProductMissing(ReconcileFault):
    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found during stock update")
        self.product_id = product_id


class MalformedLineItem(ReconcileFault):
    """A stored merch line item the stock update cannot interpret."""

    def __init__(self, item, problem: str):
        super().__init__(f"Malformed merch line item ({problem}): {item!r}")
        self.item = item
        self.problem = problem


class AlreadyProcessed(Exception):
    """Raised inside an atomic unit to roll it back when the idempotency gate
    trips. Never leaves the reconciler."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
