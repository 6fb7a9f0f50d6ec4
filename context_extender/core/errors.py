"""Error taxonomy for context-extender.

Every failure a hook invocation can report maps to exactly one subclass of
``ContextExtenderError``. Callers discriminate on type (or on the stable
``category`` attribute), never on message text. ``exit_code`` is what the
capture CLI returns for that category.
"""


class ContextExtenderError(Exception):
    """Base exception for all context-extender errors."""

    category = "Error"
    exit_code = 1


class NotFoundError(ContextExtenderError):
    """Raised when a referenced session or event does not exist."""

    category = "NotFound"
    exit_code = 3

    def __init__(self, kind: str, key: object) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class AlreadyExistsError(ContextExtenderError):
    """Raised when a session id (or import path) is already taken."""

    category = "AlreadyExists"
    exit_code = 4

    def __init__(self, kind: str, key: object) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} already exists: {key}")


class InvalidTransitionError(ContextExtenderError):
    """Raised when a status change would break the session state machine."""

    category = "InvalidTransition"
    exit_code = 5

    def __init__(self, session_id: str, current: str, requested: str) -> None:
        self.session_id = session_id
        self.current = current
        self.requested = requested
        super().__init__(f"session {session_id}: cannot move from {current} to {requested}")


class SessionTerminalError(ContextExtenderError):
    """Raised when writing to a session that is no longer active."""

    category = "SessionTerminal"
    exit_code = 6

    def __init__(self, session_id: str, status: str) -> None:
        self.session_id = session_id
        self.status = status
        super().__init__(f"session {session_id} is not active (status: {status})")


class SessionUnresolvedError(ContextExtenderError):
    """Raised when no session id could be determined for an invocation."""

    category = "SessionUnresolved"
    exit_code = 7


class SequenceConflictError(ContextExtenderError):
    """Raised when an event's sequence number collides or leaves a gap."""

    category = "SequenceConflict"
    exit_code = 8

    def __init__(self, session_id: str, sequence_num: int, expected: int | None = None) -> None:
        self.session_id = session_id
        self.sequence_num = sequence_num
        self.expected = expected
        detail = f"session {session_id}: sequence number {sequence_num} rejected"
        if expected is not None:
            detail += f" (expected {expected})"
        super().__init__(detail)


class SchemaMismatchError(ContextExtenderError):
    """Raised when the database schema is newer than this build understands."""

    category = "SchemaMismatch"
    exit_code = 9

    def __init__(self, found: int, supported: int) -> None:
        self.found = found
        self.supported = supported
        super().__init__(
            f"database schema version {found} is newer than supported version {supported}"
        )


class StoreIOError(ContextExtenderError):
    """Raised when the database driver or filesystem fails."""

    category = "StoreIO"
    exit_code = 10


class PayloadInvalidError(ContextExtenderError):
    """Raised when an event payload cannot be interpreted for its kind."""

    category = "PayloadInvalid"
    exit_code = 11


class ConfigurationError(ContextExtenderError):
    """Raised when settings or logging cannot be set up from the environment."""

    category = "Configuration"
    exit_code = 12
