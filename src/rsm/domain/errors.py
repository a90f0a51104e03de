class AppError(Exception):
    """Base app error."""


class ValidationError(AppError):
    pass


class NotFoundError(AppError):
    pass


class InsufficientStockError(AppError):
    def __init__(self, product_id: int, requested: int, available: int):
        self.product_id = int(product_id)
        self.requested = int(requested)
        self.available = int(available)
        super().__init__(
            f"Not enough stock for product {self.product_id}. "
            f"Requested: {self.requested}, available: {self.available}"
        )


class InvalidTransitionError(AppError):
    def __init__(self, order_id: int, current: str, target: str):
        self.order_id = int(order_id)
        self.current = str(current)
        self.target = str(target)
        super().__init__(f"Order {self.order_id} cannot move from {self.current} to {self.target}.")


class ConcurrencyError(AppError):
    """A conditional write found the row changed by someone else."""


class CapabilityUnavailableError(AppError):
    """The store does not support the requested operation."""


class FxUnavailableError(AppError):
    pass
