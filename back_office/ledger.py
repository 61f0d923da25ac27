"""
Ledger Store

Append-only transaction log per account. Entries are immutable once
appended and an account's balance is always the fold of its entries:
credits add, debits subtract. Balances are served from an incremental cache
that is only ever updated after a successful append and can always be
checked against a full replay from storage.

Debits are never rejected for insufficient funds; balances may go negative.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError, ValidationError
from .logging_config import get_logger


logger = get_logger(__name__)

ACCOUNTS_TABLE = "accounts"
CENT = Decimal("0.01")


class TransactionDirection(Enum):
    """Direction of a ledger entry"""
    CREDIT = "credit"
    DEBIT = "debit"


# Front-office transaction vocabulary
TRANSACTION_KINDS: Dict[str, TransactionDirection] = {
    "deposit": TransactionDirection.CREDIT,
    "withdrawal": TransactionDirection.DEBIT,
    "payment": TransactionDirection.DEBIT,
}


def direction_for(kind: Union[str, TransactionDirection]) -> TransactionDirection:
    """
    Map a direction or a transaction kind (deposit, withdrawal, payment) to a direction

    Raises:
        ValidationError: If the value names neither
    """
    if isinstance(kind, TransactionDirection):
        return kind
    key = str(kind).strip().lower()
    if key in TRANSACTION_KINDS:
        return TRANSACTION_KINDS[key]
    try:
        return TransactionDirection(key)
    except ValueError:
        raise ValidationError(f"Unknown transaction type: {kind}")


def to_amount(value: Any) -> Decimal:
    """Parse a monetary value into a Decimal quantized to cents"""
    try:
        amount = Decimal(str(value))
        if not amount.is_finite():
            raise ValidationError(f"Invalid amount: {value}")
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value}")


@dataclass
class LedgerEntry(StorageRecord):
    """Immutable credit or debit against one account"""
    account_id: str
    amount: Decimal
    direction: TransactionDirection
    description: str
    sequence: int

    @property
    def signed_amount(self) -> Decimal:
        """Amount with the sign it contributes to the balance"""
        if self.direction == TransactionDirection.CREDIT:
            return self.amount
        return -self.amount

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['direction'] = self.direction.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            account_id=data['account_id'],
            amount=Decimal(data['amount']),
            direction=TransactionDirection(data['direction']),
            description=data.get('description', ""),
            sequence=int(data['sequence'])
        )


class LedgerStore:
    """
    Per-account transaction log with derived balances
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "transactions"
        self._balances: Dict[str, Decimal] = {}

    def append(
        self,
        account_id: str,
        amount: Union[Decimal, int, str],
        direction: Union[TransactionDirection, str],
        description: str = "",
        actor: Optional[str] = None
    ) -> LedgerEntry:
        """
        Append an entry to an account's log

        Args:
            account_id: Account the entry belongs to
            amount: Positive magnitude, quantized to cents
            direction: credit or debit (deposit/withdrawal/payment also accepted)
            description: Free-text description
            actor: Identity that posted the entry, for the audit log

        Returns:
            The appended LedgerEntry

        Raises:
            ValidationError: If amount is not positive or direction is unknown
            NotFoundError: If the account does not exist
        """
        amount = to_amount(amount)
        if amount <= 0:
            raise ValidationError("Transaction amount must be greater than zero")
        direction = direction_for(direction)

        try:
            with self.storage.atomic():
                self._require_account(account_id)

                entry = LedgerEntry(
                    id=str(uuid.uuid4()),
                    created_at=datetime.now(timezone.utc),
                    account_id=account_id,
                    amount=amount,
                    direction=direction,
                    description=description,
                    sequence=self.storage.next_sequence(self.table_name)
                )
                self.storage.save(self.table_name, entry.id, entry.to_dict())
                self._apply_to_cache(entry)
        except Exception:
            self._balances.pop(account_id, None)
            raise

        self.audit_trail.record(
            AuditEventType.TRANSACTION_POSTED,
            "transaction",
            entry.id,
            {
                "account_id": account_id,
                "amount": amount,
                "direction": direction.value,
                "description": description,
            },
            actor
        )
        logger.debug("Appended %s %s to account %s", direction.value, amount, account_id)
        return entry

    def credit(self, account_id: str, amount, description: str = "",
               actor: Optional[str] = None) -> LedgerEntry:
        """Append a credit entry"""
        return self.append(account_id, amount, TransactionDirection.CREDIT, description, actor)

    def debit(self, account_id: str, amount, description: str = "",
              actor: Optional[str] = None) -> LedgerEntry:
        """Append a debit entry"""
        return self.append(account_id, amount, TransactionDirection.DEBIT, description, actor)

    def balance_of(self, account_id: str) -> Decimal:
        """
        Current balance of an account (sum of credits minus sum of debits)

        Served from the incremental cache when warm, otherwise replayed from
        storage and cached.

        Raises:
            NotFoundError: If the account does not exist
        """
        with self.storage.atomic():
            self._require_account(account_id)
            cached = self._balances.get(account_id)
            if cached is not None:
                return cached
            balance = self._fold(self._load_entries(account_id))
            # Values read inside an enclosing unit may still be rolled back
            if self.storage.transaction_depth == 1:
                self._balances[account_id] = balance
            return balance

    def replay_balance(self, account_id: str) -> Decimal:
        """Balance recomputed by full replay, bypassing the cache"""
        with self.storage.atomic():
            self._require_account(account_id)
            return self._fold(self._load_entries(account_id))

    def history(self, account_id: str) -> List[LedgerEntry]:
        """
        All entries for an account, most recent first

        Raises:
            NotFoundError: If the account does not exist
        """
        with self.storage.atomic():
            self._require_account(account_id)
            entries = self._load_entries(account_id)
        return sorted(entries, key=lambda e: e.sequence, reverse=True)

    def search(
        self,
        account_id: str,
        direction: Optional[Union[TransactionDirection, str]] = None,
        amount: Optional[Union[Decimal, int, str]] = None
    ) -> List[LedgerEntry]:
        """
        Filter an account's history

        Args:
            account_id: Account to search
            direction: Optional direction or transaction kind filter
            amount: Optional exact amount filter

        Returns:
            Matching entries, most recent first
        """
        wanted_direction = direction_for(direction) if direction is not None else None
        wanted_amount = to_amount(amount) if amount is not None else None

        results = []
        for entry in self.history(account_id):
            if wanted_direction is not None and entry.direction != wanted_direction:
                continue
            if wanted_amount is not None and entry.amount != wanted_amount:
                continue
            results.append(entry)
        return results

    def purge(self, account_id: str) -> int:
        """
        Remove every entry of an account and drop its cached balance

        Used when the account itself is closed.

        Returns:
            Number of entries removed
        """
        try:
            with self.storage.atomic():
                removed = self.storage.delete_where(self.table_name, {'account_id': account_id})
                self._balances.pop(account_id, None)
        except Exception:
            self._balances.pop(account_id, None)
            raise
        return removed

    def _require_account(self, account_id: str) -> None:
        if not self.storage.exists(ACCOUNTS_TABLE, account_id):
            raise NotFoundError(f"Account {account_id} not found")

    def _load_entries(self, account_id: str) -> List[LedgerEntry]:
        return [
            LedgerEntry.from_dict(data)
            for data in self.storage.find(self.table_name, {'account_id': account_id})
        ]

    def _apply_to_cache(self, entry: LedgerEntry) -> None:
        """Fold one committed-to-be entry into the cached balance"""
        if self.storage.transaction_depth != 1:
            # An enclosing unit may still roll this entry back
            self._balances.pop(entry.account_id, None)
            return
        cached = self._balances.get(entry.account_id)
        if cached is not None:
            self._balances[entry.account_id] = cached + entry.signed_amount

    @staticmethod
    def _fold(entries: List[LedgerEntry]) -> Decimal:
        balance = Decimal("0.00")
        for entry in entries:
            balance += entry.signed_amount
        return balance
