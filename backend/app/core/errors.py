"""Monitoring engine error taxonomy.

Only ValidationError and AuthError (plus NotFound / InvalidTransition on the
operator endpoints) ever reach an HTTP client. Everything else is absorbed
into the session / alert audit trail.
"""


class MonitoringError(Exception):
    """Base class for engine errors."""


class ValidationError(MonitoringError):
    """Malformed inbound payload. Rejected, nothing mutated."""


class AuthError(MonitoringError):
    """Bad or missing shared-secret signature. Rejected, nothing mutated."""


class DuplicateEvent(MonitoringError):
    """Event already in the log. Accepted as a no-op."""

    def __init__(self, device_id: str, occurred_at, event_type: str):
        self.device_id = device_id
        self.occurred_at = occurred_at
        self.event_type = event_type
        super().__init__(f"duplicate event {device_id} {event_type} @ {occurred_at}")


class UnregisteredDeviceError(MonitoringError):
    """No active registry entry for the device."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"device {device_id!r} is not registered or inactive")


class TransientDispatchError(MonitoringError):
    """Gateway call failed in a way worth retrying (network error, 5xx)."""


class PersistenceConflict(MonitoringError):
    """Row changed underneath us (optimistic version check failed)."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"concurrent update on {entity} {entity_id}")


class InvalidTransition(MonitoringError):
    """Requested transition is not allowed from the session's current state."""


class NotFound(MonitoringError):
    pass
