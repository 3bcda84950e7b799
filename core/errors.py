"""
core/errors.py -- Error taxonomy shared by every Warden layer.

Stores and services raise these; api/main.py maps each class to one HTTP
status in its exception handlers. Nothing below api/ knows about HTTP.

  NotFound        404  referenced entity absent
  Conflict        409  duplicate unique key or invalid state transition
  InvalidGrant    422  permission not available on the module
  Unauthenticated 401  missing, invalid, expired or revoked credentials
  Forbidden       403  valid principal without the required grant
  Unavailable     503  storage or transport failure

Layer rule: core/ is the kernel. No imports from api/, auth/, rbac/, or audit/.
"""


class WardenError(Exception):
    """Base exception for Warden."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class NotFound(WardenError):
    """Raised when a referenced entity does not exist."""


class Conflict(WardenError):
    """Raised on a unique-key collision or a state that forbids the operation."""


class InvalidGrant(WardenError):
    """Raised when a grant asks for a permission the module does not offer.

    module_id names the first offending module so the caller can report it.
    """

    def __init__(self, message: str, module_id: int | None = None):
        self.module_id = module_id
        super().__init__(message)


class Unauthenticated(WardenError):
    """Raised when the caller cannot be identified."""


class InvalidCredentials(Unauthenticated):
    """Unknown email or wrong password. The two cases are deliberately merged."""


class InvalidToken(Unauthenticated):
    """Signature, algorithm or claim shape check failed."""


class ExpiredToken(Unauthenticated):
    """The token's exp claim is in the past."""


class RevokedToken(Unauthenticated):
    """The token is on the blacklist (logged out)."""


class Forbidden(WardenError):
    """Raised when an authenticated principal may not perform the operation."""


class Unavailable(WardenError):
    """Raised when the backing store cannot be reached or fails mid-operation."""
