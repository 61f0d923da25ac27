"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Components emit (actor, action, target, detail) tuples here; the sink is
fire-and-forget, so a failing write never fails the operation being audited.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger


logger = get_logger(__name__)


class AuditEventType(Enum):
    """Types of audit events"""
    # Identity events
    IDENTITY_CREATED = "identity_created"
    ROLE_CHANGED = "role_changed"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET = "password_reset"
    CUSTOMER_ONBOARDED = "customer_onboarded"

    # Login events
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGIN_LOCKED = "login_locked"
    USER_UNLOCKED = "user_unlocked"

    # Account events
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_DELETED = "account_deleted"

    # Ledger events
    TRANSACTION_POSTED = "transaction_posted"

    # Request workflow events
    REQUEST_SUBMITTED = "request_submitted"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int
    event_type: AuditEventType
    actor: str        # Username or id of whoever caused the event, "SYSTEM" if none
    target_type: str  # identity, account, transaction, request
    target_id: str
    previous_hash: str
    current_hash: str
    detail: Dict[str, Any]

    def __post_init__(self):
        if self.detail:
            self._serialize_detail()

    def _serialize_detail(self) -> None:
        """Convert detail values to JSON-serializable format"""
        def convert_value(value):
            if isinstance(value, Decimal):
                return str(value)
            elif isinstance(value, datetime):
                return value.isoformat()
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, dict):
                return {k: convert_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [convert_value(v) for v in value]
            else:
                return value

        self.detail = {k: convert_value(v) for k, v in self.detail.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'actor': self.actor,
            'target_type': self.target_type,
            'target_id': self.target_id,
            'previous_hash': self.previous_hash,
            'detail': self.detail
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled

    def _last_hash(self) -> str:
        """Hash of the most recent audit event ("" for an empty chain)"""
        events = self.storage.load_all(self.table_name)
        if not events:
            return ""
        latest = max(events, key=lambda e: e.get('sequence', 0))
        return latest.get('current_hash', "")

    def log_event(
        self,
        event_type: AuditEventType,
        target_type: str,
        target_id: str,
        detail: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            target_type: Type of entity being audited
            target_id: ID of the entity
            detail: Additional event-specific data
            actor: Identity that initiated the action

        Returns:
            Created AuditEvent
        """
        with self.storage.atomic():
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                sequence=self.storage.next_sequence(self.table_name),
                event_type=event_type,
                actor=actor or "SYSTEM",
                target_type=target_type,
                target_id=target_id,
                previous_hash=self._last_hash(),
                current_hash="",  # Will be calculated below
                detail=detail or {}
            )

            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())

            return event

    def record(
        self,
        event_type: AuditEventType,
        target_type: str,
        target_id: str,
        detail: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Fire-and-forget variant of log_event used by the core.

        Returns None when auditing is disabled or the sink failed; the failure
        is logged and the caller carries on.
        """
        if not self.enabled:
            return None
        try:
            return self.log_event(event_type, target_type, target_id, detail, actor)
        except Exception:
            logger.warning(
                "Audit sink failed for %s on %s/%s",
                event_type.value, target_type, target_id, exc_info=True
            )
            return None

    def get_events_for_entity(self, target_type: str, target_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """All events for one entity, oldest first"""
        events_data = self.storage.find(self.table_name, {
            'target_type': target_type,
            'target_id': target_id
        })
        events = sorted((AuditEvent.from_dict(d) for d in events_data), key=lambda e: e.sequence)

        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType,
                           limit: Optional[int] = None) -> List[AuditEvent]:
        """All events of one type, oldest first"""
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        events = sorted((AuditEvent.from_dict(d) for d in events_data), key=lambda e: e.sequence)

        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        all_events_data = self.storage.load_all(self.table_name)
        events = sorted((AuditEvent.from_dict(d) for d in all_events_data), key=lambda e: e.sequence)
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
