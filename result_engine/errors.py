"""Error types raised by the result engine."""


class ResultEngineError(Exception):
    """Base class for every error the engine raises on purpose."""


class ValidationError(ResultEngineError):
    """Malformed input: score out of bounds, unknown term, bad marks."""

    def __init__(self, message, field=None):
        super().__init__(message)
        self.message = message
        self.field = field


class NotFoundError(ResultEngineError):
    """A referenced student/program/subject/exam/attempt does not exist."""

    def __init__(self, kind, ident):
        super().__init__(f"{kind} not found: {ident}")
        self.kind = kind
        self.ident = ident


class ConcurrencyConflict(ResultEngineError):
    """The stored row changed between read and write; retry the whole cycle."""

    def __init__(self, key, expected_version=None, actual_version=None):
        super().__init__(
            f"Subject grade {key} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
