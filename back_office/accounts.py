"""
Account Registry

Allocates account numbers, enforces one checking account per owner and
creates and removes account records. Every account type is the same record
with a type tag; type-specific display data lives in ACCOUNT_TYPE_INFO.

Balances are never stored here. They are read from the ledger whenever an
account is loaded.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .ledger import LedgerStore, ACCOUNTS_TABLE, to_amount
from .errors import ConflictError, NotFoundError, ValidationError
from .policy import Operation, Role, require
from .logging_config import get_logger, log_action


logger = get_logger(__name__)


class AccountType(Enum):
    """Banking account types"""
    CHECKING = "checking"
    SAVINGS = "savings"
    CARD = "card"


ACCOUNT_TYPE_INFO: Dict[AccountType, Dict[str, str]] = {
    AccountType.CHECKING: {"label": "Checking Account", "code": "CHK"},
    AccountType.SAVINGS: {"label": "Savings Account", "code": "SAV"},
    AccountType.CARD: {"label": "Card Account", "code": "CRD"},
}


def parse_account_type(value: Any) -> AccountType:
    """Parse an account type name (case-insensitive)"""
    if isinstance(value, AccountType):
        return value
    try:
        return AccountType(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown account type: {value}")


@dataclass
class Account(StorageRecord):
    """
    Customer account. ``balance`` is derived from the ledger on read and is
    not persisted.
    """
    owner_id: str
    account_type: AccountType
    account_number: str
    balance: Decimal = field(default=Decimal("0.00"))

    @property
    def label(self) -> str:
        return ACCOUNT_TYPE_INFO[self.account_type]["label"]

    @property
    def type_code(self) -> str:
        return ACCOUNT_TYPE_INFO[self.account_type]["code"]

    @property
    def is_checking(self) -> bool:
        return self.account_type == AccountType.CHECKING

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['account_type'] = self.account_type.value
        del result['balance']
        return result

    def to_public_dict(self) -> Dict[str, Any]:
        """Serializable view including the derived balance and label"""
        result = self.to_dict()
        result['balance'] = str(self.balance)
        result['label'] = self.label
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            owner_id=data['owner_id'],
            account_type=AccountType(data['account_type']),
            account_number=data['account_number']
        )


class AccountRegistry:
    """
    Account creation, numbering, lookup and removal
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: LedgerStore,
        audit_trail: AuditTrail,
        number_prefix: str = "ACCT-",
        number_width: int = 10
    ):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.number_prefix = number_prefix
        self.number_width = number_width
        self.accounts_table = ACCOUNTS_TABLE
        self.identities_table = "identities"
        self.sequence_name = "account_number"

    def allocate_account_number(self) -> str:
        """
        Allocate the next account number

        The counter is read, incremented and written inside one storage
        atomic unit, so concurrent callers never receive the same value and
        every number is greater than all previously allocated ones.
        """
        value = self.storage.next_sequence(self.sequence_name)
        return f"{self.number_prefix}{value:0{self.number_width}d}"

    def open_account(
        self,
        owner_id: str,
        account_type: Union[AccountType, str],
        initial_balance: Union[Decimal, int, str] = 0,
        actor: Optional[str] = None
    ) -> Account:
        """
        Open an account for an owner

        Args:
            owner_id: Identity that will own the account
            account_type: checking, savings or card
            initial_balance: Optional opening deposit, posted as a credit
            actor: Caller's username for the audit log

        Returns:
            Created Account with its derived balance

        Raises:
            NotFoundError: If the owner does not exist
            ConflictError: If a second checking account is requested
            ValidationError: If the type is unknown or the opening balance negative
        """
        account_type = parse_account_type(account_type)
        opening = to_amount(initial_balance)
        if opening < 0:
            raise ValidationError("Initial balance cannot be negative")

        with self.storage.atomic():
            if not self.storage.exists(self.identities_table, owner_id):
                raise NotFoundError(f"User {owner_id} not found")
            if account_type == AccountType.CHECKING and self.storage.find(
                self.accounts_table,
                {'owner_id': owner_id, 'account_type': AccountType.CHECKING.value}
            ):
                raise ConflictError(f"User {owner_id} already has a checking account")

            account = Account(
                id=str(uuid.uuid4()),
                created_at=datetime.now(timezone.utc),
                owner_id=owner_id,
                account_type=account_type,
                account_number=self.allocate_account_number()
            )

            if account.is_checking:
                unique_fields = {
                    'owner_id': owner_id,
                    'account_type': AccountType.CHECKING.value
                }
            else:
                unique_fields = {'account_number': account.account_number}
            try:
                self.storage.save_unique(
                    self.accounts_table, account.id, account.to_dict(), unique_fields
                )
            except ConflictError:
                raise ConflictError(f"User {owner_id} already has a checking account")

            if opening > 0:
                self.ledger.credit(account.id, opening, "Opening balance", actor)
            account.balance = self.ledger.balance_of(account.id)

        self.audit_trail.record(
            AuditEventType.ACCOUNT_CREATED,
            "account",
            account.id,
            {
                "account_number": account.account_number,
                "owner_id": owner_id,
                "account_type": account_type.value,
                "initial_balance": opening,
            },
            actor
        )
        log_action(logger, "info", f"Account {account.account_number} opened",
                   user_id=actor, action="open_account", resource=account.id,
                   extra={"owner_id": owner_id, "account_type": account_type.value})
        return account

    def open_default_checking(self, owner_id: str, actor: Optional[str] = None) -> Account:
        """Open the owner's single checking account (used at onboarding)"""
        return self.open_account(owner_id, AccountType.CHECKING, actor=actor)

    def close_account(self, account_number: str, actor_role: Optional[Role],
                      actor: Optional[str] = None) -> None:
        """
        Remove an account and its ledger history

        Raises:
            ForbiddenError: Unless the actor is an admin
            NotFoundError: If the account number does not exist
            ValidationError: If the account is the owner's checking account
        """
        require(actor_role, Operation.DELETE_ACCOUNT)

        with self.storage.atomic():
            account = self.find_by_number(account_number)
            if account.is_checking:
                raise ValidationError("The default checking account cannot be deleted")
            purged = self.ledger.purge(account.id)
            self.storage.delete(self.accounts_table, account.id)

        self.audit_trail.record(
            AuditEventType.ACCOUNT_DELETED,
            "account",
            account.id,
            {
                "account_number": account.account_number,
                "owner_id": account.owner_id,
                "purged_entries": purged,
            },
            actor
        )
        log_action(logger, "info", f"Account {account_number} closed",
                   user_id=actor, action="close_account", resource=account.id)

    def find_by_number(self, account_number: str) -> Account:
        """
        Look up an account by its number

        Raises:
            NotFoundError: If no account has this number
        """
        matches = self.storage.find(self.accounts_table, {'account_number': account_number})
        if not matches:
            raise NotFoundError(f"Account {account_number} not found")
        return self._with_balance(Account.from_dict(matches[0]))

    def find_by_id(self, account_id: str) -> Account:
        """
        Look up an account by id

        Raises:
            NotFoundError: If the id is unknown
        """
        data = self.storage.load(self.accounts_table, account_id)
        if not data:
            raise NotFoundError(f"Account {account_id} not found")
        return self._with_balance(Account.from_dict(data))

    def find_by_owner(self, owner_id: str) -> List[Account]:
        """All accounts of one owner, ordered by account number"""
        return self.search(owner_id=owner_id)

    def list_all(self) -> List[Account]:
        """Every account, ordered by account number"""
        return self.search()

    def search(
        self,
        account_number: Optional[str] = None,
        account_type: Optional[Union[AccountType, str]] = None,
        owner_id: Optional[str] = None
    ) -> List[Account]:
        """Accounts matching every given filter (absent filters match all)"""
        filters: Dict[str, Any] = {}
        if account_number:
            filters['account_number'] = account_number
        if account_type is not None:
            filters['account_type'] = parse_account_type(account_type).value
        if owner_id:
            filters['owner_id'] = owner_id

        with self.storage.atomic():
            accounts = [
                self._with_balance(Account.from_dict(d))
                for d in self.storage.find(self.accounts_table, filters)
            ]
        return sorted(accounts, key=lambda a: a.account_number)

    def default_checking(self, owner_id: str) -> Account:
        """
        The owner's checking account

        Raises:
            NotFoundError: If the owner has none
        """
        accounts = self.search(account_type=AccountType.CHECKING, owner_id=owner_id)
        if not accounts:
            raise NotFoundError(f"User {owner_id} has no checking account")
        return accounts[0]

    def _with_balance(self, account: Account) -> Account:
        account.balance = self.ledger.balance_of(account.id)
        return account
