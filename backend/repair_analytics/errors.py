from __future__ import annotations


class AdapterError(RuntimeError):
    """A failure reading or writing the event/session store.

    Raised by the database repositories; the analytics code lets it propagate
    to the caller unchanged.
    """

    def __init__(self, operation: str, detail: str | None = None) -> None:
        self.operation = operation
        self.detail = detail
        message = f"{operation} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InvalidRange(ValueError):
    """A time range whose end precedes its start.

    ``field`` names the input the caller should highlight.
    """

    def __init__(self, message: str, field: str = "finished_at") -> None:
        self.field = field
        self.message = message
        super().__init__(message)


class OpenSessionConflict(ValueError):
    """Reopening a session while the pair already has an open one."""

    def __init__(self, item_id: str, technician_id: str) -> None:
        self.item_id = item_id
        self.technician_id = technician_id
        super().__init__(
            f"technician {technician_id} already has an open session on {item_id}"
        )


class SessionNotFound(LookupError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"work session {session_id} not found")
