"""
Back office context

One object built at startup that owns the storage backend and every store.
It is passed explicitly to whoever needs it (the API, scripts, tests); there
are no module-level singletons.

It also hosts the few operations that span more than one store, such as
customer onboarding, which must create the identity and its checking account
in the same atomic unit.
"""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Optional, Tuple, Union

from .config import BackOfficeConfig, get_config
from .storage import StorageInterface, create_storage
from .audit import AuditTrail, AuditEventType
from .ledger import LedgerEntry, LedgerStore, TransactionDirection, direction_for
from .accounts import Account, AccountRegistry
from .identity import Identity, IdentityStore
from .login_guard import LoginGuard, LoginResult
from .workflows import WorkflowEngine
from .tokens import TokenClaims, TokenService
from .errors import NotFoundError, TokenError
from .policy import Operation, Role, require
from .logging_config import get_logger, log_action


logger = get_logger(__name__)


class BackOffice:
    """
    Handles to every store over one shared storage backend
    """

    def __init__(self, storage: StorageInterface, config: Optional[BackOfficeConfig] = None,
                 clock: Optional[Callable] = None):
        self.config = config or get_config()
        self.storage = storage

        self.audit_trail = AuditTrail(storage, enabled=self.config.enable_audit_logging)
        self.ledger = LedgerStore(storage, self.audit_trail)
        self.identities = IdentityStore(
            storage, self.audit_trail,
            password_min_length=self.config.password_min_length
        )
        self.accounts = AccountRegistry(
            storage, self.ledger, self.audit_trail,
            number_prefix=self.config.account_number_prefix,
            number_width=self.config.account_number_width
        )
        self.login_guard = LoginGuard(
            storage, self.identities, self.audit_trail,
            max_failed_attempts=self.config.max_failed_logins,
            lockout_duration=timedelta(hours=self.config.lockout_hours),
            clock=clock
        )
        self.workflows = WorkflowEngine(
            storage, self.identities, self.accounts, self.login_guard, self.audit_trail,
            temporary_password_bytes=self.config.temporary_password_bytes
        )
        self.tokens = TokenService(
            self.config.jwt_secret,
            algorithm=self.config.jwt_algorithm,
            expiry_hours=self.config.jwt_expiry_hours
        )

    @classmethod
    def from_config(cls, config: Optional[BackOfficeConfig] = None,
                    clock: Optional[Callable] = None) -> 'BackOffice':
        """Build the storage backend named by ``database_url`` and every store on it"""
        config = config or get_config()
        return cls(create_storage(config.database_url), config, clock)

    def close(self) -> None:
        self.storage.close()

    def onboard_customer(
        self,
        username: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
        actor_role: Optional[Role] = None,
        actor: Optional[str] = None
    ) -> Tuple[Identity, Account]:
        """
        Create a customer identity together with its default checking account

        Both records are written in one atomic unit: if either fails, neither
        exists.

        Returns:
            (identity, checking account)
        """
        with self.storage.atomic():
            identity = self.identities.create(
                username, password, Role.CUSTOMER,
                actor_role=actor_role,
                first_name=first_name,
                last_name=last_name,
                actor=actor
            )
            checking = self.accounts.open_default_checking(identity.id, actor=actor)

        self.audit_trail.record(
            AuditEventType.CUSTOMER_ONBOARDED,
            "identity",
            identity.id,
            {"username": identity.username, "checking_account": checking.account_number},
            actor
        )
        return identity, checking

    def create_employee(self, username: str, password: str, role: Role,
                        actor_role: Optional[Role], first_name: str = "",
                        last_name: str = "", actor: Optional[str] = None) -> Identity:
        """Create a teller or admin (admin only); customers go through onboard_customer"""
        return self.identities.create(
            username, password, role,
            actor_role=actor_role,
            first_name=first_name,
            last_name=last_name,
            actor=actor
        )

    def login(self, username: str, password: str) -> Tuple[LoginResult, str]:
        """Authenticate and issue a bearer token"""
        result = self.login_guard.authenticate(username, password)
        return result, self.tokens.issue_token(result.identity)

    def resolve_caller(self, token: str) -> TokenClaims:
        """
        Verify a bearer token and bind it to the identity as stored now

        Role and username come from the identity store rather than the token,
        so a role change takes effect on the caller's next request.

        Raises:
            TokenExpiredError: If the token is past its expiry
            TokenError: If the token is invalid or its identity no longer exists
        """
        claims = self.tokens.verify_token(token)
        try:
            identity = self.identities.find_by_id(claims.identity_id)
        except NotFoundError:
            raise TokenError("Token subject no longer exists")
        return replace(claims, username=identity.username, role=identity.role)

    def post_transaction(
        self,
        account_id: str,
        kind: Union[str, TransactionDirection],
        amount: Union[Decimal, int, str],
        description: str = "",
        actor_role: Optional[Role] = None,
        actor: Optional[str] = None
    ) -> LedgerEntry:
        """
        Post a deposit, withdrawal or payment against an account (employees only)
        """
        require(actor_role, Operation.POST_TRANSACTION)
        entry = self.ledger.append(account_id, amount, direction_for(kind), description, actor)
        log_action(logger, "info", f"Transaction posted on {account_id}",
                   user_id=actor, action="post_transaction", resource=entry.id,
                   extra={"direction": entry.direction.value, "amount": str(entry.amount)})
        return entry

    def deposit(self, account_id: str, amount, description: str = "Deposit",
                actor_role: Optional[Role] = None, actor: Optional[str] = None) -> LedgerEntry:
        return self.post_transaction(account_id, TransactionDirection.CREDIT, amount,
                                     description, actor_role, actor)

    def withdraw(self, account_id: str, amount, description: str = "Withdrawal",
                 actor_role: Optional[Role] = None, actor: Optional[str] = None) -> LedgerEntry:
        return self.post_transaction(account_id, TransactionDirection.DEBIT, amount,
                                     description, actor_role, actor)
