"""
Identity Store

Owns user identities: username, scrypt password credential and role.
Customers, tellers and admins are one record type distinguished by a role
tag; what each role may do lives in the policy table, not here.

The customer role is terminal: no role edit moves an identity to or from it.
"""

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .errors import NotFoundError, ValidationError
from .policy import Operation, Role, require
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


logger = get_logger(__name__)


@dataclass
class Identity(StorageRecord):
    """A person who can log in"""
    username: str
    role: Role
    password_hash: str = ""
    password_salt: str = ""
    first_name: str = ""
    last_name: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_employee(self) -> bool:
        return self.role in (Role.TELLER, Role.ADMIN)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['role'] = self.role.value
        return result

    def to_public_dict(self) -> Dict[str, Any]:
        """Serializable view without credentials"""
        result = self.to_dict()
        del result['password_hash']
        del result['password_salt']
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Identity':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['role'] = Role(data['role'])
        return cls(**data)


def parse_role(value: Any) -> Role:
    """Parse a role name (case-insensitive)"""
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown role: {value}")


class IdentityStore:
    """
    Identity persistence, credential hashing and role changes
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 password_min_length: int = 8):
        self.storage = storage
        self.audit_trail = audit_trail
        self.password_min_length = password_min_length
        self.table_name = "identities"

    def create(
        self,
        username: str,
        password: str,
        role: Role,
        actor_role: Optional[Role] = None,
        first_name: str = "",
        last_name: str = "",
        actor: Optional[str] = None
    ) -> Identity:
        """
        Create a new identity

        Args:
            username: Unique login name (exact match, surrounding whitespace stripped)
            password: Plain-text password, hashed before storage
            role: Role of the new identity
            actor_role: Role of the caller, None for self-service registration
            first_name: Optional given name
            last_name: Optional family name
            actor: Caller's username for the audit log

        Returns:
            Created Identity

        Raises:
            ForbiddenError: If the caller may not create this role
            ValidationError: If username is blank or password too short
            ConflictError: If the username is taken
        """
        role = parse_role(role)
        require(actor_role, Operation.CREATE_IDENTITY, target_role=role)

        username = (username or "").strip()
        if not username:
            raise ValidationError("Username is required")
        self._validate_password(password)

        identity = Identity(
            id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc),
            username=username,
            role=role,
            first_name=first_name or "",
            last_name=last_name or ""
        )
        self._set_password(identity, password)

        self.storage.save_unique(
            self.table_name, identity.id, identity.to_dict(), {'username': username}
        )

        self.audit_trail.record(
            AuditEventType.IDENTITY_CREATED,
            "identity",
            identity.id,
            {"username": username, "role": role.value},
            actor
        )
        log_action(logger, "info", f"Identity {username} created",
                   user_id=actor, action="create_identity", resource=identity.id,
                   extra={"role": role.value})
        return identity

    def find_by_username(self, username: str) -> Identity:
        """
        Look up an identity by exact username

        Raises:
            NotFoundError: If no identity has this username
        """
        matches = self.storage.find(self.table_name, {'username': (username or "").strip()})
        if not matches:
            raise NotFoundError(f"User {username} not found")
        return Identity.from_dict(matches[0])

    def find_by_id(self, identity_id: str) -> Identity:
        """
        Look up an identity by id

        Raises:
            NotFoundError: If the id is unknown
        """
        data = self.storage.load(self.table_name, identity_id)
        if not data:
            raise NotFoundError(f"User {identity_id} not found")
        return Identity.from_dict(data)

    def exists(self, identity_id: str) -> bool:
        return self.storage.exists(self.table_name, identity_id)

    def list_all(self) -> List[Identity]:
        return [Identity.from_dict(d) for d in self.storage.load_all(self.table_name)]

    def search(self, username: Optional[str] = None,
               role: Optional[Role] = None) -> List[Identity]:
        """Identities matching an exact username and/or role (absent filters match all)"""
        filters: Dict[str, Any] = {}
        if username:
            filters['username'] = username.strip()
        if role is not None:
            filters['role'] = parse_role(role).value
        return [Identity.from_dict(d) for d in self.storage.find(self.table_name, filters)]

    def search_customers(self, username: Optional[str] = None) -> List[Identity]:
        """Customer identities only, as tellers see them"""
        return self.search(username=username, role=Role.CUSTOMER)

    def set_role(self, identity_id: str, new_role: Role, actor_role: Optional[Role],
                 actor: Optional[str] = None) -> Identity:
        """
        Change another identity's role

        Raises:
            NotFoundError: If the identity does not exist
            ForbiddenError: Unless an admin moves between teller and admin
        """
        new_role = parse_role(new_role)
        with self.storage.atomic():
            identity = self.find_by_id(identity_id)
            require(actor_role, Operation.EDIT_ROLE,
                    target_role=identity.role, new_role=new_role)

            old_role = identity.role
            identity.role = new_role
            self.storage.save(self.table_name, identity.id, identity.to_dict())

        self.audit_trail.record(
            AuditEventType.ROLE_CHANGED,
            "identity",
            identity.id,
            {"old_role": old_role.value, "new_role": new_role.value},
            actor
        )
        log_action(logger, "info", f"Role of {identity.username} changed",
                   user_id=actor, action="set_role", resource=identity.id,
                   extra={"old_role": old_role.value, "new_role": new_role.value})
        return identity

    def set_password_hash(self, identity_id: str, password: str,
                          actor: Optional[str] = None) -> Identity:
        """
        Overwrite an identity's credential with a freshly salted hash

        Raises:
            NotFoundError: If the identity does not exist
            ValidationError: If the password is too short
        """
        self._validate_password(password)
        with self.storage.atomic():
            identity = self.find_by_id(identity_id)
            self._set_password(identity, password)
            self.storage.save(self.table_name, identity.id, identity.to_dict())

        self.audit_trail.record(
            AuditEventType.PASSWORD_CHANGED, "identity", identity.id, {}, actor
        )
        return identity

    def verify_password(self, identity: Identity, password: str) -> bool:
        """Check a plain-text password against the stored hash"""
        if not identity.password_hash or not identity.password_salt:
            return False
        candidate = self._hash_password(password or "", identity.password_salt)
        return secrets.compare_digest(candidate, identity.password_hash)

    def generate_temporary_password(self, nbytes: int = 9) -> str:
        """
        Random URL-safe password for administrative resets

        Never shorter than ``password_min_length``: n random bytes encode to
        at least n characters.
        """
        return secrets.token_urlsafe(max(nbytes, self.password_min_length))

    def _validate_password(self, password: str) -> None:
        if not password or len(password) < self.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.password_min_length} characters"
            )

    def _set_password(self, identity: Identity, password: str) -> None:
        identity.password_salt = secrets.token_hex(16)
        identity.password_hash = self._hash_password(password, identity.password_salt)

    @staticmethod
    def _hash_password(password: str, salt: str) -> str:
        """Hash password with salt using scrypt"""
        return hashlib.scrypt(
            password.encode(),
            salt=salt.encode(),
            n=16384, r=8, p=1
        ).hex()
