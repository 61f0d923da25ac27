"""
Error Taxonomy Module

Domain-specific failures raised by the back office core. Each error carries a
``kind`` string so that boundary layers can translate it without inspecting
messages. The core never retries; every error is terminal for the operation
that raised it.
"""

from datetime import datetime
from typing import Optional


class BackOfficeError(Exception):
    """Base class for all back office failures"""
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BackOfficeError):
    """Malformed or missing input"""
    kind = "validation"


class NotFoundError(BackOfficeError):
    """Unknown identity, account or request"""
    kind = "not_found"


class ConflictError(BackOfficeError):
    """Duplicate checking account, duplicate username, already-resolved request"""
    kind = "conflict"


class ForbiddenError(BackOfficeError):
    """Role policy violation"""
    kind = "forbidden"


class LockedError(BackOfficeError):
    """Login blocked by an active lockout window"""
    kind = "locked"

    def __init__(self, message: str, locked_until: Optional[datetime] = None):
        super().__init__(message)
        self.locked_until = locked_until


class UnauthorizedError(BackOfficeError):
    """Bad credentials"""
    kind = "unauthorized"

    def __init__(self, message: str, attempts_remaining: Optional[int] = None):
        super().__init__(message)
        self.attempts_remaining = attempts_remaining


class TokenError(BackOfficeError):
    """Bearer token missing, malformed or signed with the wrong key"""
    kind = "unauthenticated"


class TokenExpiredError(TokenError):
    """Bearer token past its expiry"""
    kind = "expired"
