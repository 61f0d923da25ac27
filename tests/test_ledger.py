"""
Test suite for the ledger store

Tests balance derivation, history ordering, search filters, the balance cache
and per-account serialization of appends.
"""

import pytest
import random
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from back_office.storage import InMemoryStorage
from back_office.audit import AuditTrail, AuditEventType
from back_office.errors import NotFoundError, ValidationError
from back_office.ledger import (
    LedgerStore, LedgerEntry, TransactionDirection, direction_for, to_amount
)


@pytest.fixture
def storage():
    """Create in-memory storage with two accounts"""
    storage = InMemoryStorage()
    storage.save("accounts", "ACC1", {"id": "ACC1"})
    storage.save("accounts", "ACC2", {"id": "ACC2"})
    return storage


@pytest.fixture
def audit(storage):
    return AuditTrail(storage)


@pytest.fixture
def ledger(storage, audit):
    return LedgerStore(storage, audit)


class TestAmountsAndDirections:
    """Test parsing helpers"""

    def test_amounts_quantized_to_cents(self):
        assert to_amount("10") == Decimal("10.00")
        assert to_amount(Decimal("1.005")) == Decimal("1.01")
        assert to_amount(7) == Decimal("7.00")

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", ""])
    def test_invalid_amounts(self, value):
        with pytest.raises(ValidationError):
            to_amount(value)

    def test_transaction_kinds(self):
        assert direction_for("deposit") == TransactionDirection.CREDIT
        assert direction_for("Withdrawal") == TransactionDirection.DEBIT
        assert direction_for("payment") == TransactionDirection.DEBIT
        assert direction_for("credit") == TransactionDirection.CREDIT
        assert direction_for(TransactionDirection.DEBIT) == TransactionDirection.DEBIT

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            direction_for("transfer")


class TestAppend:
    """Test appending entries"""

    def test_append_returns_entry(self, ledger):
        entry = ledger.append("ACC1", "100", TransactionDirection.CREDIT, "Salary")

        assert isinstance(entry, LedgerEntry)
        assert entry.amount == Decimal("100.00")
        assert entry.direction == TransactionDirection.CREDIT
        assert entry.description == "Salary"
        assert entry.signed_amount == Decimal("100.00")

    @pytest.mark.parametrize("amount", ["0", "-5", "0.001"])
    def test_non_positive_amount_rejected(self, ledger, amount):
        with pytest.raises(ValidationError):
            ledger.append("ACC1", amount, "credit")

    def test_unknown_account(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.append("NOPE", "10", "credit")

    def test_debit_may_overdraw(self, ledger):
        ledger.debit("ACC1", "25.00", "Card payment")

        assert ledger.balance_of("ACC1") == Decimal("-25.00")

    def test_append_is_audited(self, ledger, audit):
        entry = ledger.credit("ACC1", "5", actor="teller1")

        events = audit.get_events_for_entity("transaction", entry.id)
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.TRANSACTION_POSTED
        assert events[0].actor == "teller1"
        assert events[0].detail["amount"] == "5.00"


class TestBalance:
    """Test balance derivation"""

    def test_deposit_then_withdraw(self, ledger):
        ledger.credit("ACC1", "100.00", "Deposit")
        ledger.debit("ACC1", "30.00", "Withdrawal")

        assert ledger.balance_of("ACC1") == Decimal("70.00")

    def test_empty_account(self, ledger):
        assert ledger.balance_of("ACC1") == Decimal("0")

    def test_accounts_are_independent(self, ledger):
        ledger.credit("ACC1", "10")
        ledger.credit("ACC2", "99")

        assert ledger.balance_of("ACC1") == Decimal("10.00")
        assert ledger.balance_of("ACC2") == Decimal("99.00")

    def test_cached_and_replayed_balance_agree(self, ledger):
        rng = random.Random(42)
        expected = Decimal("0")
        ledger.balance_of("ACC1")  # warm the cache

        for _ in range(50):
            amount = Decimal(rng.randint(1, 100000)) / 100
            if rng.random() < 0.5:
                ledger.credit("ACC1", amount)
                expected += amount
            else:
                ledger.debit("ACC1", amount)
                expected -= amount
            assert ledger.balance_of("ACC1") == ledger.replay_balance("ACC1")

        assert ledger.balance_of("ACC1") == expected

    def test_unknown_account(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.balance_of("NOPE")

    def test_rolled_back_append_not_cached(self, ledger, storage):
        ledger.credit("ACC1", "10")
        assert ledger.balance_of("ACC1") == Decimal("10.00")

        with pytest.raises(RuntimeError):
            with storage.atomic():
                ledger.credit("ACC1", "500")
                raise RuntimeError("abort")

        assert ledger.balance_of("ACC1") == Decimal("10.00")
        assert len(ledger.history("ACC1")) == 1


class TestHistoryAndSearch:
    """Test history ordering and filters"""

    def test_history_most_recent_first(self, ledger):
        first = ledger.credit("ACC1", "100.00", "Deposit")
        second = ledger.debit("ACC1", "30.00", "Withdrawal")

        history = ledger.history("ACC1")

        assert [e.id for e in history] == [second.id, first.id]

    def test_history_only_for_account(self, ledger):
        ledger.credit("ACC1", "1")
        ledger.credit("ACC2", "2")

        assert [e.amount for e in ledger.history("ACC2")] == [Decimal("2.00")]

    def test_history_unknown_account(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.history("NOPE")

    def test_search_filters(self, ledger):
        ledger.credit("ACC1", "50")
        ledger.debit("ACC1", "20")
        ledger.credit("ACC1", "20")

        assert len(ledger.search("ACC1")) == 3
        assert len(ledger.search("ACC1", direction="credit")) == 2
        assert len(ledger.search("ACC1", direction="withdrawal")) == 1
        assert len(ledger.search("ACC1", amount="20")) == 2
        matches = ledger.search("ACC1", direction=TransactionDirection.CREDIT, amount="20.00")
        assert len(matches) == 1
        assert matches[0].direction == TransactionDirection.CREDIT

    def test_search_unknown_account(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.search("NOPE", direction="credit")


class TestPurge:
    """Test removal of a closed account's entries"""

    def test_purge_removes_entries(self, ledger, storage):
        ledger.credit("ACC1", "10")
        ledger.credit("ACC1", "20")
        ledger.credit("ACC2", "5")
        ledger.balance_of("ACC1")

        assert ledger.purge("ACC1") == 2
        assert ledger.history("ACC1") == []
        assert ledger.balance_of("ACC1") == Decimal("0")
        assert ledger.balance_of("ACC2") == Decimal("5.00")


class TestConcurrency:
    """Appends on one account form a single serial history"""

    def test_concurrent_appends(self, ledger):
        ledger.balance_of("ACC1")

        def post(i):
            if i % 3 == 0:
                ledger.debit("ACC1", "1.00")
            else:
                ledger.credit("ACC1", "2.00")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(post, range(90)))

        # 60 credits of 2.00, 30 debits of 1.00
        assert ledger.balance_of("ACC1") == Decimal("90.00")
        assert ledger.replay_balance("ACC1") == Decimal("90.00")
        sequences = [e.sequence for e in ledger.history("ACC1")]
        assert len(set(sequences)) == 90
