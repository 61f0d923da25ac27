"""
Test suite for integration scenarios

Tests end-to-end back office scenarios combining all system components
through one BackOffice context: onboarding, lockout, approval workflows,
ledger postings and role administration.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from back_office.config import BackOfficeConfig
from back_office.storage import InMemoryStorage
from back_office.audit import AuditEventType
from back_office.context import BackOffice
from back_office.accounts import AccountType
from back_office.identity import Identity
from back_office.policy import Role
from back_office.workflows import RequestKind, RequestStatus, Decision
from back_office.errors import (
    ConflictError, ForbiddenError, LockedError, NotFoundError, TokenError,
    UnauthorizedError, ValidationError
)


class FakeClock:
    """Settable clock"""

    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TestFullBackOffice:
    """Integration tests for the complete back office"""

    def setup_method(self):
        """Set up a complete back office over in-memory storage"""
        self.clock = FakeClock()
        self.config = BackOfficeConfig(database_url="memory://", jwt_secret="integration-secret")
        self.office = BackOffice(InMemoryStorage(), self.config, clock=self.clock)

        self.admin = self.office.identities.create(
            "root", "admin-password", Role.ADMIN, actor_role=Role.ADMIN
        )
        self.teller = self.office.create_employee(
            "tina", "teller-password", Role.TELLER, Role.ADMIN, actor="root"
        )

    def teardown_method(self):
        self.office.close()

    def onboard_alice(self):
        return self.office.onboard_customer(
            "alice", "password123", first_name="Alice", last_name="Smith"
        )

    def test_onboarding_creates_one_checking_account(self):
        """Scenario 1: a new customer gets exactly one empty checking account"""
        alice, checking = self.onboard_alice()

        accounts = self.office.accounts.find_by_owner(alice.id)
        assert [a.id for a in accounts] == [checking.id]
        assert checking.account_type == AccountType.CHECKING
        assert checking.balance == Decimal("0")
        assert checking.account_number == "ACCT-0000000001"

        _, bobs_checking = self.office.onboard_customer("bob", "password123")
        assert bobs_checking.account_number == "ACCT-0000000002"

        events = self.office.audit_trail.get_events_by_type(AuditEventType.CUSTOMER_ONBOARDED)
        assert len(events) == 2

    def test_onboarding_is_all_or_nothing(self, monkeypatch):
        def broken(owner_id, actor=None):
            raise RuntimeError("disk full")

        monkeypatch.setattr(self.office.accounts, "open_default_checking", broken)

        with pytest.raises(RuntimeError):
            self.onboard_alice()

        with pytest.raises(NotFoundError):
            self.office.identities.find_by_username("alice")

    def test_duplicate_onboarding_keeps_single_checking(self):
        alice, _ = self.onboard_alice()

        with pytest.raises(ConflictError):
            self.onboard_alice()

        assert len(self.office.accounts.search(account_type="checking", owner_id=alice.id)) == 1
        assert len(self.office.accounts.list_all()) == 1

    def test_teller_onboards_customer(self):
        alice, checking = self.office.onboard_customer(
            "alice", "password123", actor_role=Role.TELLER, actor="tina"
        )

        assert alice.role == Role.CUSTOMER
        assert checking.owner_id == alice.id

    def test_lockout_scenario(self):
        """Scenario 2: four failures warn, the fifth locks for a day"""
        self.onboard_alice()

        for expected_remaining in (4, 3, 2, 1):
            with pytest.raises(UnauthorizedError) as exc_info:
                self.office.login("alice", "wrong-password")
            assert exc_info.value.attempts_remaining == expected_remaining
        assert "1 attempt remaining" in exc_info.value.message

        with pytest.raises(UnauthorizedError):
            self.office.login("alice", "wrong-password")

        with pytest.raises(LockedError) as exc_info:
            self.office.login("alice", "password123")
        assert exc_info.value.locked_until == self.clock.now + timedelta(hours=24)

        self.clock.advance(hours=24)
        result, token = self.office.login("alice", "password123")
        assert result.identity.username == "alice"
        assert token

    def test_account_open_workflow(self):
        """Scenario 3: teller submits, admin approves, a second resolve fails"""
        alice, _ = self.onboard_alice()

        request = self.office.workflows.submit(
            RequestKind.ACCOUNT_OPEN, alice.id, {"account_type": "savings"}, actor="tina"
        )
        assert [r.id for r in self.office.workflows.list_pending()] == [request.id]

        resolution = self.office.workflows.resolve(
            request.id, Decision.APPROVE, Role.ADMIN, actor_id=self.admin.id
        )

        savings = resolution.account
        assert savings.account_type == AccountType.SAVINGS
        assert savings.owner_id == alice.id
        assert self.office.accounts.find_by_id(savings.id).balance == Decimal("0")
        resolved = self.office.workflows.get_request(request.id)
        assert resolved.status == RequestStatus.APPROVED
        assert resolved.resolved_at is not None

        with pytest.raises(NotFoundError):
            self.office.workflows.resolve(request.id, Decision.REJECT, Role.ADMIN)
        assert len(self.office.accounts.find_by_owner(alice.id)) == 2

    def test_account_deletion_workflow(self):
        """Scenario 4: savings deletion approved, checking deletion refused"""
        alice, checking = self.onboard_alice()
        savings = self.office.accounts.open_account(alice.id, AccountType.SAVINGS)

        request = self.office.workflows.submit(
            RequestKind.ACCOUNT_DELETION, alice.id,
            {"account_number": savings.account_number, "reason": "unused"}
        )
        self.office.workflows.resolve(request.id, Decision.APPROVE, Role.ADMIN)

        with pytest.raises(NotFoundError):
            self.office.accounts.find_by_number(savings.account_number)

        with pytest.raises(ValidationError):
            self.office.workflows.submit(
                RequestKind.ACCOUNT_DELETION, alice.id,
                {"account_number": checking.account_number, "reason": "unused"}
            )
        assert self.office.accounts.default_checking(alice.id).id == checking.id

    def test_deposit_and_withdrawal(self):
        """Scenario 5: 100.00 in, 30.00 out"""
        alice, checking = self.onboard_alice()

        deposit = self.office.deposit(checking.id, "100.00", actor_role=Role.TELLER, actor="tina")
        withdrawal = self.office.withdraw(checking.id, "30.00", actor_role=Role.TELLER, actor="tina")

        assert self.office.ledger.balance_of(checking.id) == Decimal("70.00")
        history = self.office.ledger.history(checking.id)
        assert [e.id for e in history] == [withdrawal.id, deposit.id]
        assert self.office.accounts.find_by_id(checking.id).balance == Decimal("70.00")

    def test_customers_cannot_post_transactions(self):
        alice, checking = self.onboard_alice()

        with pytest.raises(ForbiddenError):
            self.office.post_transaction(checking.id, "deposit", "10", actor_role=Role.CUSTOMER)
        assert self.office.ledger.history(checking.id) == []

    def test_role_administration(self):
        """Scenario 6: customers stay customers, demoted admins lose admin rights"""
        alice, _ = self.onboard_alice()
        other_admin = self.office.identities.create(
            "root2", "admin-password", Role.ADMIN, actor_role=Role.ADMIN
        )

        with pytest.raises(ForbiddenError):
            self.office.identities.set_role(alice.id, Role.TELLER, Role.ADMIN)

        _, token = self.office.login("root2", "admin-password")
        self.office.identities.set_role(other_admin.id, Role.TELLER, Role.ADMIN)

        # A token issued before the demotion resolves to the stored role
        caller = self.office.resolve_caller(token)
        assert caller.role == Role.TELLER
        assert self.office.tokens.verify_token(token).role == Role.ADMIN

        with pytest.raises(ForbiddenError):
            self.office.login_guard.unlock(alice.id, caller.role)

    def test_token_for_missing_identity(self):
        ghost = Identity(id="ghost-id", created_at=datetime.now(timezone.utc),
                         username="ghost", role=Role.ADMIN)
        token = self.office.tokens.issue_token(ghost)

        with pytest.raises(TokenError):
            self.office.resolve_caller(token)

    def test_password_reset_round_trip(self):
        alice, _ = self.onboard_alice()

        request = self.office.workflows.request_password_reset("alice")
        resolution = self.office.workflows.resolve(
            request.id, Decision.APPROVE, Role.ADMIN, actor_id=self.admin.id
        )

        result, _ = self.office.login("alice", resolution.temporary_password)
        assert result.force_password_change

        self.office.login_guard.change_password(
            alice.id, resolution.temporary_password, "my-own-password"
        )
        result, _ = self.office.login("alice", "my-own-password")
        assert not result.force_password_change

    def test_audit_chain_survives_full_run(self):
        alice, checking = self.onboard_alice()
        self.office.deposit(checking.id, "25", actor_role=Role.TELLER)
        request = self.office.workflows.submit(
            RequestKind.ACCOUNT_OPEN, alice.id, {"account_type": "card"}
        )
        self.office.workflows.resolve(request.id, Decision.REJECT, Role.TELLER)

        assert self.office.audit_trail.verify_integrity()["valid"]


class TestFromConfig:
    """Building the context from configuration"""

    def test_memory_url(self):
        office = BackOffice.from_config(BackOfficeConfig(database_url="memory://"))

        alice, checking = office.onboard_customer("alice", "password123")

        assert office.accounts.default_checking(alice.id).id == checking.id
        office.close()

    def test_config_limits_flow_into_stores(self):
        config = BackOfficeConfig(
            database_url="memory://",
            max_failed_logins=3,
            lockout_hours=1,
            account_number_prefix="BO-",
            account_number_width=4,
        )
        office = BackOffice.from_config(config)

        _, checking = office.onboard_customer("alice", "password123")

        assert checking.account_number == "BO-0001"
        assert office.login_guard.max_failed_attempts == 3
        assert office.login_guard.lockout_duration == timedelta(hours=1)
        office.close()
