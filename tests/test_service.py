"""Tests for the LedgerService layer."""

import logging
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import httpx
import pytest

from split_ledger.clients.notifier import (
    BALANCE_UPDATE,
    BUDGET_ALERT,
    BUDGET_CREATED,
    TRANSACTION_UPDATE,
    RecordingBroadcaster,
    WebhookBroadcaster,
)
from split_ledger.config import Settings
from split_ledger.db import Database
from split_ledger.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    SplitLedgerError,
    TransportError,
    UnsupportedGroupSizeError,
    ValidationError,
)
from split_ledger.models import Category
from split_ledger.service import LedgerService

NOW = datetime(2025, 1, 20, 12, 0, 0)


@pytest.fixture
def settings(tmp_path):
    return Settings(database_path=tmp_path / "test.db")


@pytest.fixture
def db(settings):
    """Create a temporary database."""
    db = Database(settings.database_path)
    yield db
    db.close()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def service(settings, db, broadcaster):
    """Create a LedgerService with a fixed clock."""
    return LedgerService(settings, db, broadcaster=broadcaster, clock=lambda: NOW)


@pytest.fixture
def trio(service):
    """A three-member group of alice, bob and carol."""
    group = service.create_group("flat", "alice", "shared flat")
    service.add_member(group.id, "bob")
    service.add_member(group.id, "carol")
    return group.id


def balances_of(service: LedgerService, group_id: int) -> dict[str, Decimal]:
    return {b.member_id: b.balance for b in service.get_balances(group_id)}


class TestGroups:
    """Test group creation and membership."""

    def test_creator_is_first_member(self, service):
        group = service.create_group("home", "alice")

        assert group.id is not None
        assert group.member_ids == ["alice"]
        assert balances_of(service, group.id) == {"alice": Decimal("0.00")}

    def test_duplicate_name_conflicts(self, service):
        service.create_group("home", "alice")

        with pytest.raises(ConflictError):
            service.create_group("home", "bob")

    def test_empty_name_is_invalid(self, service):
        with pytest.raises(ValidationError):
            service.create_group("", "alice")

    def test_join_adds_zero_balance(self, service, trio):
        group = service.get_group(trio)

        assert group.member_ids == ["alice", "bob", "carol"]
        assert all(b == 0 for b in balances_of(service, trio).values())

    def test_join_twice_conflicts(self, service, trio):
        with pytest.raises(ConflictError):
            service.add_member(trio, "bob")

    def test_unknown_group(self, service):
        with pytest.raises(NotFoundError):
            service.get_group(999)


class TestRecordTransaction:
    """Test recording expenses."""

    def test_even_split_example(self, service, trio):
        tx = service.record_transaction(
            trio, "alice", "30", category=Category.GROCERIES, description="Market"
        )

        assert tx.id is not None
        assert tx.amount == Decimal("30.00")
        assert tx.split_member_ids == ["alice", "bob", "carol"]
        assert tx.date == NOW
        assert balances_of(service, trio) == {
            "alice": Decimal("20.00"),
            "bob": Decimal("-10.00"),
            "carol": Decimal("-10.00"),
        }

    @pytest.mark.parametrize("amount", ["0", "-5.00", "abc"])
    def test_rejects_invalid_amounts(self, service, trio, amount):
        with pytest.raises(ValidationError):
            service.record_transaction(trio, "alice", amount)

    def test_rejects_sub_cent_amount(self, service, trio):
        with pytest.raises(ValidationError):
            service.record_transaction(trio, "alice", "1.005")

    def test_rejects_non_member_payer(self, service, trio):
        with pytest.raises(ValidationError):
            service.record_transaction(trio, "mallory", "10.00")

        assert service.list_transactions(trio) == []

    def test_rejects_settlement_category(self, service, trio):
        with pytest.raises(ValidationError):
            service.record_transaction(
                trio, "alice", "10.00", category=Category.SETTLEMENT
            )

    def test_owed_to_purchaser_in_single_member_group(self, service):
        group = service.create_group("solo", "alice")

        with pytest.raises(UnsupportedGroupSizeError):
            service.record_transaction(
                group.id, "alice", "10.00", owed_to_purchaser=True
            )

        # The failed write left nothing behind
        assert service.list_transactions(group.id) == []

    def test_notifies_transaction_and_balances(self, service, trio, broadcaster):
        tx = service.record_transaction(trio, "bob", "9.00")

        created = broadcaster.named(TRANSACTION_UPDATE)
        assert len(created) == 1
        assert created[0].room == f"group-{trio}"
        assert created[0].payload["type"] == "created"
        assert created[0].payload["transaction"]["id"] == tx.id
        assert created[0].payload["group_id"] == trio

        balance_events = broadcaster.named(BALANCE_UPDATE)
        assert len(balance_events) == 1
        assert len(balance_events[0].payload["balances"]) == 3

    def test_failing_broadcaster_does_not_fail_write(self, settings, db, trio):
        def reject(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        relay = WebhookBroadcaster(
            "http://relay.test", transport=httpx.MockTransport(reject)
        )
        service = LedgerService(settings, db, broadcaster=relay, clock=lambda: NOW)

        tx = service.record_transaction(trio, "alice", "15.00")

        assert service.get_transaction(tx.id).amount == Decimal("15.00")
        assert balances_of(service, trio)["alice"] == Decimal("10.00")
        relay.close()

    def test_transport_error_is_logged(self, settings, db, trio, caplog):
        broadcaster = MagicMock()
        broadcaster.emit.side_effect = TransportError("relay down")
        service = LedgerService(
            settings, db, broadcaster=broadcaster, clock=lambda: NOW
        )

        with caplog.at_level(logging.WARNING, logger="split_ledger.service"):
            service.record_transaction(trio, "alice", "15.00")

        assert broadcaster.emit.call_count == 2
        assert "relay down" in caplog.text

    def test_other_broadcaster_errors_are_logged(self, settings, db, trio, caplog):
        broadcaster = MagicMock()
        broadcaster.emit.side_effect = SplitLedgerError("relay misconfigured")
        service = LedgerService(
            settings, db, broadcaster=broadcaster, clock=lambda: NOW
        )

        with caplog.at_level(logging.WARNING, logger="split_ledger.service"):
            tx = service.record_transaction(trio, "alice", "15.00")

        assert service.get_transaction(tx.id).amount == Decimal("15.00")
        assert "relay misconfigured" in caplog.text

    def test_aware_date_is_stored_as_local_time(self, service, trio):
        paid_at = datetime(2025, 1, 25, 12, 0, tzinfo=UTC)

        tx = service.record_transaction(trio, "alice", "15.00", date=paid_at)

        expected = paid_at.astimezone().replace(tzinfo=None)
        assert tx.date == expected
        assert service.get_transaction(tx.id).date == expected


class TestUpdateTransaction:
    """Test editing expenses."""

    def test_amount_change_swaps_effect(self, service, trio):
        tx = service.record_transaction(trio, "alice", "30.00")

        updated = service.update_transaction(tx.id, "alice", amount="60.00")

        assert updated.amount == Decimal("60.00")
        assert balances_of(service, trio) == {
            "alice": Decimal("40.00"),
            "bob": Decimal("-20.00"),
            "carol": Decimal("-20.00"),
        }

    def test_description_change_keeps_balances(self, service, trio, broadcaster):
        tx = service.record_transaction(trio, "alice", "30.00")
        before = balances_of(service, trio)
        broadcaster.events.clear()

        updated = service.update_transaction(
            tx.id, "alice", description="Dinner", category=Category.DATE_NIGHT
        )

        assert updated.description == "Dinner"
        assert service.get_transaction(tx.id).category == Category.DATE_NIGHT
        assert balances_of(service, trio) == before
        assert [e.event for e in broadcaster.events] == [TRANSACTION_UPDATE]

    def test_only_payer_may_update(self, service, trio):
        tx = service.record_transaction(trio, "alice", "30.00")

        with pytest.raises(AuthorizationError):
            service.update_transaction(tx.id, "bob", amount="1.00")

    def test_unknown_transaction(self, service, trio):
        with pytest.raises(NotFoundError):
            service.update_transaction(999, "alice", amount="1.00")

    def test_settled_transaction_is_immutable(self, service):
        group = service.create_group("home", "alice")
        service.add_member(group.id, "bob")
        tx = service.record_transaction(group.id, "alice", "30.00")
        result = service.settle(group.id)

        with pytest.raises(ConflictError):
            service.update_transaction(tx.id, "alice", amount="1.00")
        with pytest.raises(ConflictError):
            service.update_transaction(
                result.transaction.id, result.payer_id, description="x"
            )


class TestDeleteTransaction:
    """Test deleting expenses."""

    def test_delete_restores_balances(self, service, trio):
        keep = service.record_transaction(trio, "bob", "12.00")
        before = balances_of(service, trio)
        tx = service.record_transaction(trio, "alice", "33.33")

        service.delete_transaction(tx.id, "alice")

        assert balances_of(service, trio) == before
        assert [t.id for t in service.list_transactions(trio)] == [keep.id]

    def test_delete_after_membership_change(self, service, trio):
        """Reversal uses the members the expense was split across."""
        tx = service.record_transaction(trio, "alice", "30.00")
        service.add_member(trio, "dave")

        service.delete_transaction(tx.id, "alice")

        assert all(b == 0 for b in balances_of(service, trio).values())

    def test_only_payer_may_delete(self, service, trio):
        tx = service.record_transaction(trio, "alice", "30.00")

        with pytest.raises(AuthorizationError):
            service.delete_transaction(tx.id, "carol")

    def test_delete_notifies(self, service, trio, broadcaster):
        tx = service.record_transaction(trio, "alice", "30.00")
        broadcaster.events.clear()

        service.delete_transaction(tx.id, "alice")

        deleted = broadcaster.named(TRANSACTION_UPDATE)
        assert deleted[0].payload == {
            "type": "deleted",
            "transaction_id": tx.id,
            "group_id": trio,
            "timestamp": NOW.isoformat(),
        }


class TestUnsettledTotal:
    """Test spending since the last settlement."""

    def test_counts_since_latest_settlement(self, service):
        group = service.create_group("home", "alice")
        service.add_member(group.id, "bob")
        service.record_transaction(group.id, "alice", "100.00")
        service.settle(group.id)
        service.record_transaction(group.id, "bob", "20.00")
        service.record_transaction(group.id, "alice", "5.50")

        total = service.get_unsettled_total(group.id)

        assert total.total == Decimal("25.50")
        assert total.transaction_count == 2

    def test_empty_group(self, service, trio):
        total = service.get_unsettled_total(trio)

        assert total.total == 0
        assert total.transaction_count == 0


class TestBudgetImpact:
    """Test budget alerts raised by new expenses."""

    def test_threshold_alert(self, service, trio, broadcaster):
        service.create_budget(trio, "alice", Category.GROCERIES, "100.00", alert_at=50)

        service.record_transaction(trio, "bob", "40.00", category=Category.GROCERIES)
        assert broadcaster.named(BUDGET_ALERT) == []

        service.record_transaction(trio, "bob", "15.00", category=Category.GROCERIES)
        alerts = broadcaster.named(BUDGET_ALERT)
        assert len(alerts) == 1
        assert alerts[0].payload["type"] == "threshold_reached"
        assert alerts[0].payload["severity"] == "warning"
        assert alerts[0].payload["spending"]["current"] == "55.00"

    def test_exceeded_alert(self, service, trio, broadcaster):
        service.create_budget(trio, "alice", Category.TRAVEL, "50.00")

        service.record_transaction(trio, "carol", "75.00", category=Category.TRAVEL)

        alert = broadcaster.named(BUDGET_ALERT)[-1]
        assert alert.payload["type"] == "budget_exceeded"
        assert alert.payload["severity"] == "critical"
        assert alert.payload["spending"]["over_amount"] == "25.00"

    def test_aware_date_counts_toward_budget(self, service, trio, broadcaster):
        service.create_budget(trio, "alice", Category.GROCERIES, "100.00")

        service.record_transaction(
            trio,
            "bob",
            "90.00",
            category=Category.GROCERIES,
            date=datetime(2025, 1, 25, 12, 0, tzinfo=UTC),
        )
        snapshot = service.get_budget_snapshot(trio, Category.GROCERIES)

        assert snapshot.spending == Decimal("90.00")
        assert broadcaster.named(BUDGET_ALERT)[-1].payload["type"] == (
            "threshold_reached"
        )
        assert len(service.list_budgets(trio)) == 1

    def test_other_categories_do_not_alert(self, service, trio, broadcaster):
        service.create_budget(trio, "alice", Category.TRAVEL, "50.00")

        service.record_transaction(trio, "carol", "75.00", category=Category.GIFTS)

        assert broadcaster.named(BUDGET_ALERT) == []

    def test_budget_created_event(self, service, trio, broadcaster):
        budget = service.create_budget(trio, "bob", Category.UTILITIES, "120.00")

        created = broadcaster.named(BUDGET_CREATED)
        assert created[0].payload["budget"]["id"] == budget.id

    def test_non_member_cannot_create_budget(self, service, trio):
        with pytest.raises(AuthorizationError):
            service.create_budget(trio, "mallory", Category.UTILITIES, "10.00")


class TestConcurrentSettlement:
    """A settle from another connection wins over a pending edit."""

    @pytest.fixture
    def couple(self, service):
        group = service.create_group("home", "alice")
        service.add_member(group.id, "bob")
        return group.id

    @pytest.fixture
    def other_service(self, settings):
        """A second service on its own database connection."""
        other_db = Database(settings.database_path)
        yield LedgerService(
            settings, other_db, broadcaster=RecordingBroadcaster(), clock=lambda: NOW
        )
        other_db.close()

    def settle_before_lock(self, db, other_service, group_id):
        """Make the other connection settle right before db takes the lock."""
        begin = db.transaction
        settled = []

        @contextmanager
        def transaction():
            if not settled:
                settled.append(other_service.settle(group_id))
            with begin() as conn:
                yield conn

        return patch.object(db, "transaction", transaction)

    def test_delete_after_concurrent_settle(self, service, db, other_service, couple):
        tx = service.record_transaction(couple, "alice", "50.00", owed_to_purchaser=True)

        with self.settle_before_lock(db, other_service, couple):
            with pytest.raises(ConflictError):
                service.delete_transaction(tx.id, "alice")

        assert service.get_transaction(tx.id).has_been_settled
        assert all(b == 0 for b in balances_of(service, couple).values())

    def test_update_after_concurrent_settle(self, service, db, other_service, couple):
        tx = service.record_transaction(couple, "alice", "50.00")

        with self.settle_before_lock(db, other_service, couple):
            with pytest.raises(ConflictError):
                service.update_transaction(tx.id, "alice", amount="80.00")

        assert service.get_transaction(tx.id).amount == Decimal("50.00")
        assert all(b == 0 for b in balances_of(service, couple).values())
