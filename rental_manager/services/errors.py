from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


class RentalEngineError(RuntimeError):
    code = "rental_error"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class ValidationError(RentalEngineError):
    code = "validation_error"


class NotFound(RentalEngineError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found.")
        self.entity = entity
        self.entity_id = entity_id


@dataclass(frozen=True)
class Shortage:
    itemId: int
    requested: int
    available: int

    @property
    def shortfall(self) -> int:
        return self.requested - self.available


class InsufficientAvailability(RentalEngineError):
    code = "insufficient_availability"

    def __init__(self, shortages: list[Shortage]):
        details = ", ".join(
            f"item {s.itemId}: requested {s.requested}, available {s.available}" for s in shortages
        )
        super().__init__(f"Insufficient availability ({details}).")
        self.shortages = list(shortages)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["shortages"] = [dict(asdict(s), shortfall=s.shortfall) for s in self.shortages]
        return payload


class InvalidStateTransition(RentalEngineError):
    code = "invalid_state_transition"

    def __init__(self, current: str, target: str, detail: str | None = None):
        message = f"Invalid state transition: {current} -> {target}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.current = current
        self.target = target

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["currentStatus"] = self.current
        payload["targetStatus"] = self.target
        return payload


class CycleDetected(RentalEngineError):
    code = "cycle_detected"

    def __init__(self, message: str, path: list[int] | None = None):
        super().__init__(message)
        self.path = list(path or [])

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["path"] = self.path
        return payload


class InsufficientStock(RentalEngineError):
    code = "insufficient_stock"

    def __init__(self, item_id: int, on_hand: int, delta: int):
        super().__init__(
            f"Stock movement of {delta} would leave item {item_id} at {on_hand + delta} (on hand {on_hand})."
        )
        self.item_id = item_id
        self.on_hand = on_hand
        self.delta = delta

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update({"itemId": self.item_id, "onHand": self.on_hand, "delta": self.delta})
        return payload


class ConcurrencyConflict(RentalEngineError):
    code = "concurrency_conflict"
