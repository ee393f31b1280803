"""
Error kinds raised by the trigger engine.

Fatal, per-operation problems are exceptions. Failures of a single unit inside a
bulk scan are captured as ScanPartialFailure records and returned in the bulk
result instead of being raised.
"""


class EngineError(Exception):
    """Base class for trigger engine errors."""


class InvalidTriggerConfig(EngineError):
    """The trigger has no usable search terms, keywords or NDC."""

    def __init__(self, trigger_code: str, reason: str):
        self.trigger_code = trigger_code
        self.reason = reason
        super().__init__(f"Trigger {trigger_code}: {reason}")


class NotFound(EngineError):
    def __init__(self, resource: str, resource_id):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} not found")


class RepositoryError(EngineError):
    """Claims/trigger store I/O or constraint failure."""


class DuplicateTriggerCode(RepositoryError):
    def __init__(self, trigger_code: str):
        self.trigger_code = trigger_code
        super().__init__(f"A trigger with code '{trigger_code}' already exists")


class InvalidStatusTransition(EngineError):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move opportunity from '{current}' to '{requested}'")


class ScanPartialFailure(EngineError):
    """One unit (trigger or pharmacy) of a bulk scan failed while the rest went on."""

    def __init__(self, unit: str, unit_id, name: str | None, reason: str):
        self.unit = unit
        self.unit_id = unit_id
        self.name = name
        self.reason = reason
        super().__init__(f"{unit} {name or unit_id}: {reason}")

    @classmethod
    def from_exception(cls, unit: str, unit_id, name: str | None, exc: Exception) -> "ScanPartialFailure":
        return cls(unit, unit_id, name, f"{type(exc).__name__}: {str(exc)[:200]}")

    def to_dict(self) -> dict:
        return {
            "unit": self.unit,
            "id": self.unit_id,
            "name": self.name,
            "reason": self.reason,
        }
