"""
Approval Workflow Engine

Generic pending -> approved/rejected request lifecycle. Three request kinds
are wired to side effects: account opening and account deletion in the
account registry, password reset in the identity store.

A request leaves ``pending`` exactly once. Resolution checks the status,
consults the policy, performs the side effect and records the outcome inside
one storage atomic unit, so a failing side effect leaves the request pending
and concurrent resolutions of one request serialize.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import Account, AccountRegistry, parse_account_type
from .identity import IdentityStore
from .login_guard import LoginGuard
from .errors import NotFoundError, ValidationError
from .policy import Operation, Role, require
from .logging_config import get_logger, log_action


logger = get_logger(__name__)


class RequestKind(Enum):
    """Kinds of approval requests"""
    ACCOUNT_OPEN = "account_open"
    ACCOUNT_DELETION = "account_deletion"
    PASSWORD_RESET = "password_reset"


class RequestStatus(Enum):
    """Request lifecycle states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(Enum):
    """Approver decisions"""
    APPROVE = "approve"
    REJECT = "reject"


# Approve and reject are gated by the same operation
RESOLVE_OPERATIONS: Dict[RequestKind, Operation] = {
    RequestKind.ACCOUNT_OPEN: Operation.RESOLVE_ACCOUNT_OPEN,
    RequestKind.ACCOUNT_DELETION: Operation.RESOLVE_ACCOUNT_DELETION,
    RequestKind.PASSWORD_RESET: Operation.RESOLVE_PASSWORD_RESET,
}


def _parse_enum(enum_cls, value, what: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown {what}: {value}")


def parse_kind(value: Union[RequestKind, str]) -> RequestKind:
    return _parse_enum(RequestKind, value, "request kind")


def parse_status(value: Union[RequestStatus, str]) -> RequestStatus:
    return _parse_enum(RequestStatus, value, "request status")


def parse_decision(value: Union[Decision, str]) -> Decision:
    return _parse_enum(Decision, value, "decision")


@dataclass
class Request(StorageRecord):
    """A pending change awaiting approval"""
    kind: RequestKind
    requester_id: str
    sequence: int
    payload: Dict[str, Any] = field(default_factory=dict)
    status: RequestStatus = RequestStatus.PENDING
    requested_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    target_account_id: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['kind'] = self.kind.value
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Request':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['kind'] = RequestKind(data['kind'])
        data['status'] = RequestStatus(data['status'])
        for key in ('requested_at', 'resolved_at'):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


@dataclass
class Resolution:
    """Outcome of resolving a request"""
    request: Request
    account: Optional[Account] = None
    temporary_password: Optional[str] = None


class WorkflowEngine:
    """
    Request submission, listing and resolution
    """

    def __init__(
        self,
        storage: StorageInterface,
        identities: IdentityStore,
        accounts: AccountRegistry,
        login_guard: LoginGuard,
        audit_trail: AuditTrail,
        temporary_password_bytes: int = 9
    ):
        self.storage = storage
        self.identities = identities
        self.accounts = accounts
        self.login_guard = login_guard
        self.audit_trail = audit_trail
        self.temporary_password_bytes = temporary_password_bytes
        self.table_name = "requests"

    def submit(
        self,
        kind: Union[RequestKind, str],
        requester_id: str,
        payload: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None
    ) -> Request:
        """
        Submit a new pending request

        Args:
            kind: account_open, account_deletion or password_reset
            requester_id: Identity the request is for
            payload: Kind-specific data. account_open needs ``account_type``;
                account_deletion needs ``account_number`` and ``reason``
            actor: Caller's username for the audit log

        Returns:
            The pending Request

        Raises:
            NotFoundError: Unknown requester or, for deletions, unknown account
            ValidationError: Missing or invalid payload, or a deletion that
                targets another owner's account or the default checking account
        """
        kind = parse_kind(kind)
        payload = dict(payload or {})

        with self.storage.atomic():
            self.identities.find_by_id(requester_id)
            target_account_id = None

            if kind == RequestKind.ACCOUNT_OPEN:
                if not payload.get('account_type'):
                    raise ValidationError("account_type is required")
                payload = {'account_type': parse_account_type(payload['account_type']).value}

            elif kind == RequestKind.ACCOUNT_DELETION:
                account_number = (payload.get('account_number') or "").strip()
                reason = (payload.get('reason') or "").strip()
                if not account_number:
                    raise ValidationError("account_number is required")
                if not reason:
                    raise ValidationError("A reason is required for account deletion")
                account = self.accounts.find_by_number(account_number)
                if account.owner_id != requester_id:
                    raise ValidationError(
                        f"Account {account_number} does not belong to the requester"
                    )
                if account.is_checking:
                    raise ValidationError("The default checking account cannot be deleted")
                payload = {'account_number': account_number, 'reason': reason}
                target_account_id = account.id

            else:
                payload = {}

            now = datetime.now(timezone.utc)
            request = Request(
                id=str(uuid.uuid4()),
                created_at=now,
                kind=kind,
                requester_id=requester_id,
                sequence=self.storage.next_sequence(self.table_name),
                payload=payload,
                requested_at=now,
                target_account_id=target_account_id
            )
            self.storage.save(self.table_name, request.id, request.to_dict())

        self.audit_trail.record(
            AuditEventType.REQUEST_SUBMITTED,
            "request",
            request.id,
            {"kind": kind.value, "requester_id": requester_id, "payload": payload},
            actor
        )
        log_action(logger, "info", f"Request {request.id} submitted",
                   user_id=actor, action="submit_request", resource=request.id,
                   extra={"kind": kind.value, "requester_id": requester_id})
        return request

    def request_password_reset(self, username: str) -> Request:
        """
        Unauthenticated forgot-password entry point

        Raises:
            NotFoundError: If the username is unknown
        """
        identity = self.identities.find_by_username(username)
        return self.submit(RequestKind.PASSWORD_RESET, identity.id, actor=identity.username)

    def get_request(self, request_id: str) -> Request:
        """
        Load one request

        Raises:
            NotFoundError: If the id is unknown
        """
        data = self.storage.load(self.table_name, request_id)
        if not data:
            raise NotFoundError(f"Request {request_id} not found")
        return Request.from_dict(data)

    def list_pending(self, kind: Optional[Union[RequestKind, str]] = None) -> List[Request]:
        """Pending requests, most recently requested first"""
        return self.list_requests(kind=kind, status=RequestStatus.PENDING)

    def list_requests(
        self,
        requester_id: Optional[str] = None,
        kind: Optional[Union[RequestKind, str]] = None,
        status: Optional[Union[RequestStatus, str]] = None
    ) -> List[Request]:
        """Requests matching every given filter, most recently requested first"""
        filters: Dict[str, Any] = {}
        if requester_id:
            filters['requester_id'] = requester_id
        if kind is not None:
            filters['kind'] = parse_kind(kind).value
        if status is not None:
            filters['status'] = parse_status(status).value

        requests = [Request.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        return sorted(requests, key=lambda r: r.sequence, reverse=True)

    def resolve(
        self,
        request_id: str,
        decision: Union[Decision, str],
        actor_role: Optional[Role],
        actor_id: Optional[str] = None
    ) -> Resolution:
        """
        Approve or reject a pending request

        On approval the kind-specific side effect runs before the request is
        marked resolved. If it fails, the error propagates and the request
        stays pending.

        Args:
            request_id: Request to resolve
            decision: approve or reject
            actor_role: Role of the approver
            actor_id: Identity id of the approver

        Returns:
            Resolution with the resolved request, the opened account for an
            approved account_open, or the temporary password for an approved
            password_reset

        Raises:
            NotFoundError: If the request does not exist or is not pending
            ForbiddenError: If the approver's role may not resolve this kind
            ConflictError: If an approved account_open asks for a second checking account
        """
        decision = parse_decision(decision)

        with self.storage.atomic():
            data = self.storage.load(self.table_name, request_id)
            if not data or data.get('status') != RequestStatus.PENDING.value:
                raise NotFoundError(f"Pending request {request_id} not found")
            request = Request.from_dict(data)

            require(actor_role, RESOLVE_OPERATIONS[request.kind])

            resolution = Resolution(request=request)
            if decision == Decision.APPROVE:
                self._apply(request, resolution, actor_id)
                request.status = RequestStatus.APPROVED
            else:
                request.status = RequestStatus.REJECTED

            request.resolved_at = datetime.now(timezone.utc)
            request.resolved_by = actor_id
            self.storage.save(self.table_name, request.id, request.to_dict())

        event_type = (AuditEventType.REQUEST_APPROVED if decision == Decision.APPROVE
                      else AuditEventType.REQUEST_REJECTED)
        self.audit_trail.record(
            event_type,
            "request",
            request.id,
            {"kind": request.kind.value, "requester_id": request.requester_id},
            actor_id
        )
        log_action(logger, "info", f"Request {request.id} {request.status.value}",
                   user_id=actor_id, action="resolve_request", resource=request.id,
                   extra={"kind": request.kind.value})
        return resolution

    def _apply(self, request: Request, resolution: Resolution,
               actor_id: Optional[str]) -> None:
        """Run the side effect of an approved request"""
        if request.kind == RequestKind.ACCOUNT_OPEN:
            resolution.account = self.accounts.open_account(
                request.requester_id, request.payload['account_type'], actor=actor_id
            )

        elif request.kind == RequestKind.ACCOUNT_DELETION:
            self.accounts.close_account(
                request.payload['account_number'], Role.ADMIN, actor=actor_id
            )

        elif request.kind == RequestKind.PASSWORD_RESET:
            temporary = self.identities.generate_temporary_password(
                self.temporary_password_bytes
            )
            self.identities.set_password_hash(request.requester_id, temporary, actor=actor_id)
            self.login_guard.set_force_password_change(request.requester_id, True)
            resolution.temporary_password = temporary
            self.audit_trail.record(
                AuditEventType.PASSWORD_RESET, "identity", request.requester_id,
                {"request_id": request.id}, actor_id
            )
