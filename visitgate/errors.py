from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .gate import Deny


class InvalidTransition(ValueError):
    def __init__(self, visit_id: int, from_status: str, to_status: str):
        self.visit_id = visit_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid visit status transition: {from_status} -> {to_status}")


class GateDenied(PermissionError):
    """Raised when the contribution gate refuses a mutation."""

    def __init__(self, decision: "Deny"):
        self.decision = decision
        super().__init__(decision.message)

    @property
    def reason(self) -> str:
        return self.decision.reason


class ItemRejected(Exception):
    """A single bulk item refused by a guard; ``reason`` is the closed vocabulary."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class StoreUnavailable(RuntimeError):
    pass


class IdempotencyConflict(Exception):
    def __init__(self, actor_id: int, action: str, idempotency_key: str):
        self.actor_id = actor_id
        self.action = action
        self.idempotency_key = idempotency_key
        super().__init__(f"Idempotency key already recorded for {action}")
