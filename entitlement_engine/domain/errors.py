from __future__ import annotations


class EngineError(ValueError):
    pass


class NotFoundError(EngineError):
    """A required entitlement, product or record is absent."""


class DomainError(EngineError):
    """An invariant was violated. Never silently corrected."""


class UsageExceeded(DomainError):
    def __init__(self, *, limit: int, used: int, amount: int):
        self.limit = limit
        self.used = used
        self.amount = amount
        super().__init__(f"Entitlement usage exceeded: {used} + {amount} > {limit}")


class TrialAlreadyUsed(DomainError):
    def __init__(self, *, user_id: str, product_id: str):
        self.user_id = user_id
        self.product_id = product_id
        super().__init__(
            f"User already has a trial for product {product_id}. Each user can only trial a product once."
        )


class EventValidationError(EngineError):
    """An inbound message could not be parsed into a known event."""
