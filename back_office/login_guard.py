"""
Login Guard

Per-identity failed-login tracking with time-boxed lockout.

States are Active(failures) and Locked(until). A wrong password moves
Active(n) to Active(n + 1) until the configured maximum is reached, at which
point the identity is Locked for the lockout window. A correct password resets
Active(n) to Active(0). While Locked, attempts are rejected before the
credential is even evaluated. Expiry is a plain time comparison; nothing is
scheduled, and an expired lock reads as Active(0).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from .audit import AuditEventType, AuditTrail
from .errors import LockedError, NotFoundError, UnauthorizedError
from .identity import Identity, IdentityStore
from .policy import Operation, Role, require
from .storage import StorageInterface
from .logging_config import get_logger, log_action


logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LoginState:
    """Failed-attempt counter and lock window of one identity"""
    identity_id: str
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    force_password_change: bool = False

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.identity_id,
            'identity_id': self.identity_id,
            'failed_attempts': self.failed_attempts,
            'locked_until': self.locked_until.isoformat() if self.locked_until else None,
            'force_password_change': self.force_password_change,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoginState':
        locked_until = data.get('locked_until')
        return cls(
            identity_id=data['identity_id'],
            failed_attempts=int(data.get('failed_attempts', 0)),
            locked_until=datetime.fromisoformat(locked_until) if locked_until else None,
            force_password_change=bool(data.get('force_password_change', False))
        )


@dataclass
class LoginResult:
    """Outcome of a successful authentication"""
    identity: Identity
    force_password_change: bool = False


class LoginGuard:
    """
    Authentication front door with lockout
    """

    def __init__(
        self,
        storage: StorageInterface,
        identities: IdentityStore,
        audit_trail: AuditTrail,
        max_failed_attempts: int = 5,
        lockout_duration: timedelta = timedelta(hours=24),
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.identities = identities
        self.audit_trail = audit_trail
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration = lockout_duration
        self.clock = clock or utc_now
        self.table_name = "login_state"

    def get_state(self, identity_id: str) -> LoginState:
        """Stored login state, or a fresh Active(0) state if none was written yet"""
        data = self.storage.load(self.table_name, identity_id)
        if data:
            return LoginState.from_dict(data)
        return LoginState(identity_id=identity_id)

    def is_locked(self, identity_id: str) -> bool:
        """True iff a lock expiry exists and now is before it"""
        return self.get_state(identity_id).is_locked(self.clock())

    def authenticate(self, username: str, password: str) -> LoginResult:
        """
        Check credentials and apply the lockout state machine

        Args:
            username: Login name
            password: Plain-text password

        Returns:
            LoginResult carrying the identity and its force-password-change flag

        Raises:
            UnauthorizedError: Unknown username or wrong password; carries
                ``attempts_remaining`` for a known identity
            LockedError: The identity is inside its lockout window
        """
        try:
            identity = self.identities.find_by_username(username)
        except NotFoundError:
            self.audit_trail.record(
                AuditEventType.LOGIN_FAILED, "identity", username or "",
                {"reason": "unknown_user"}, username
            )
            raise UnauthorizedError("Invalid username or password")

        state = self.get_state(identity.id)
        if state.is_locked(self.clock()):
            raise self._locked_error(identity, state)

        # scrypt is slow; keep it outside the storage lock
        valid = self.identities.verify_password(identity, password)

        with self.storage.atomic():
            state = self.get_state(identity.id)
            now = self.clock()
            if state.is_locked(now):
                locked = state
            else:
                locked = None
                if state.locked_until is not None:
                    # Expired lock window
                    state.locked_until = None
                    state.failed_attempts = 0
                if valid:
                    if self.storage.exists(self.table_name, identity.id):
                        state.failed_attempts = 0
                        self.storage.save(self.table_name, identity.id, state.to_dict())
                else:
                    state.failed_attempts += 1
                    if state.failed_attempts >= self.max_failed_attempts:
                        state.locked_until = now + self.lockout_duration
                    self.storage.save(self.table_name, identity.id, state.to_dict())

        # A concurrent attempt locked the identity while the password was checked
        if locked is not None:
            raise self._locked_error(identity, locked)

        if valid:
            self.audit_trail.record(
                AuditEventType.LOGIN_SUCCESS, "identity", identity.id, {}, identity.username
            )
            log_action(logger, "info", f"User {identity.username} logged in",
                       user_id=identity.id, action="login", resource=identity.id)
            return LoginResult(identity=identity,
                               force_password_change=state.force_password_change)

        if state.locked_until is not None:
            self.audit_trail.record(
                AuditEventType.LOGIN_LOCKED, "identity", identity.id,
                {"locked_until": state.locked_until}, identity.username
            )
            log_action(logger, "warning", f"User {identity.username} locked out",
                       user_id=identity.id, action="lockout", resource=identity.id,
                       extra={"locked_until": state.locked_until.isoformat()})
            raise UnauthorizedError(
                f"Invalid username or password. Too many failed attempts; "
                f"account locked until {state.locked_until.isoformat()}",
                attempts_remaining=0
            )

        remaining = self.max_failed_attempts - state.failed_attempts
        self.audit_trail.record(
            AuditEventType.LOGIN_FAILED, "identity", identity.id,
            {"reason": "invalid_password", "failed_attempts": state.failed_attempts},
            identity.username
        )
        message = "Invalid username or password"
        if remaining == 1:
            message += ". 1 attempt remaining before the account is locked"
        raise UnauthorizedError(message, attempts_remaining=remaining)

    def unlock(self, identity_id: str, actor_role: Optional[Role],
               actor: Optional[str] = None) -> LoginState:
        """
        Administrative reset to Active(0), usable while locked

        Raises:
            ForbiddenError: Unless the actor is an admin
            NotFoundError: If the identity does not exist
        """
        require(actor_role, Operation.UNLOCK_IDENTITY)
        with self.storage.atomic():
            self.identities.find_by_id(identity_id)
            state = self.get_state(identity_id)
            state.failed_attempts = 0
            state.locked_until = None
            self.storage.save(self.table_name, identity_id, state.to_dict())

        self.audit_trail.record(
            AuditEventType.USER_UNLOCKED, "identity", identity_id, {}, actor
        )
        log_action(logger, "info", f"Identity {identity_id} unlocked",
                   user_id=actor, action="unlock", resource=identity_id)
        return state

    def set_force_password_change(self, identity_id: str, value: bool) -> LoginState:
        """Write the force-password-change flag"""
        with self.storage.atomic():
            state = self.get_state(identity_id)
            state.force_password_change = value
            self.storage.save(self.table_name, identity_id, state.to_dict())
        return state

    def change_password(self, identity_id: str, old_password: str,
                        new_password: str) -> Identity:
        """
        Self-service password change; clears the force-password-change flag

        Raises:
            NotFoundError: If the identity does not exist
            UnauthorizedError: If the old password is wrong
            ValidationError: If the new password is too short
        """
        identity = self.identities.find_by_id(identity_id)
        if not self.identities.verify_password(identity, old_password):
            raise UnauthorizedError("Current password is incorrect")

        with self.storage.atomic():
            identity = self.identities.set_password_hash(
                identity_id, new_password, actor=identity.username
            )
            self.set_force_password_change(identity_id, False)
        return identity

    def _locked_error(self, identity: Identity, state: LoginState) -> LockedError:
        self.audit_trail.record(
            AuditEventType.LOGIN_FAILED, "identity", identity.id,
            {"reason": "locked"}, identity.username
        )
        return LockedError(
            f"Account is locked until {state.locked_until.isoformat()}",
            locked_until=state.locked_until
        )
