from __future__ import annotations


class AppError(Exception):
    """Base app error."""


class ValidationError(AppError):
    pass


class NotFoundError(AppError):
    pass


class UnauthorizedError(AppError):
    pass


class ConflictError(AppError):
    """Concurrent modification detected; the whole operation may be retried."""


class StoreUnavailableError(AppError):
    """The database round trip failed; nothing is known to be committed."""


class InsufficientStockError(AppError):
    def __init__(self, sku: str, available: int, requested: int):
        self.sku = sku
        self.available = int(available)
        self.requested = int(requested)
        super().__init__(f"Not enough stock for {sku}. Available: {available}, requested: {requested}")


class InvalidStateTransitionError(AppError):
    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from '{current}' to '{target}'.")
