"""Bridge error taxonomy.

Recoverable errors derive from ``BridgeError``. ``InvariantViolation`` does
not: it signals that a closed set of operation or event kinds turned out not
to be closed, and callers must be able to tell it apart from ordinary
failures.
"""


class BridgeError(Exception):
    """Base class for recoverable bridge errors."""


class MissingIdentityTokenError(BridgeError):
    """No credential is cached for the identity that has to act on GitLab."""

    def __init__(self, message: str = "missing identity token"):
        super().__init__(message)


class BugNotFoundError(BridgeError):
    """No local bug matches the lookup."""


class IdentityNotFoundError(BridgeError):
    """No local identity matches the lookup."""


class NoMatchingOperationError(BridgeError):
    """No operation of the bug carries the requested metadata."""


class MultipleMatchError(BridgeError):
    """A lookup that must be unambiguous matched several entities."""

    def __init__(self, kind: str, matches):
        self.kind = kind
        self.matches = list(matches)
        super().__init__(f"multiple matching {kind}: {', '.join(self.matches)}")


class MappingError(BridgeError):
    """Remote or local data can't be mapped (unexpected id format, missing metadata...).

    Only the bug/issue being processed is abandoned.
    """


class PassCancelledError(BridgeError):
    """The pass was cancelled or ran out of time before the next remote call."""

    def __init__(self, message: str = "pass cancelled"):
        super().__init__(message)


class PassInProgressError(BridgeError):
    """Another pass already holds the store."""


class InvariantViolation(Exception):
    """A "should never happen" branch was reached."""
