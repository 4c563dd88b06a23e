"""Domain error taxonomy.

Services raise these; the HTTP layer maps each family to one status code
(see main.py). Authentication failures deliberately carry no detail about
which check failed.
"""


class AccessCoreError(Exception):
    """Base class for every domain error."""

    status_code = 400


class NotFoundError(AccessCoreError):
    """Unknown id, token or prefix."""

    status_code = 404


class ConflictError(AccessCoreError):
    """Duplicate slug/email/membership/property name, double-accept."""

    status_code = 409


class InvariantViolationError(AccessCoreError):
    """The operation would break a cross-row invariant (e.g. last owner)."""

    status_code = 409


class ExpiredError(AccessCoreError):
    """Session, invitation or API key past its expiry."""

    status_code = 410


class InvalidValueError(AccessCoreError):
    """A value does not parse as its declared type."""

    status_code = 422


class PermissionDeniedError(AccessCoreError):
    status_code = 403


class AuthenticationError(AccessCoreError):
    """Generic credential failure. The message never says why."""

    status_code = 401

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class MissingRequiredContextError(AccessCoreError):
    """RLS resolution found required properties without a value.

    Carries every missing property name, not just the first.
    """

    status_code = 422

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(
            "Missing required session properties: " + ", ".join(self.missing)
        )
