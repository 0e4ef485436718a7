"""Tests for transaction effects and the balance ledger."""

from datetime import datetime
from decimal import Decimal

import pytest

from split_ledger.db import Database
from split_ledger.exceptions import UnsupportedGroupSizeError, ValidationError
from split_ledger.ledger import (
    BalanceLedger,
    allocate_cents,
    compute_transaction_effect,
    effect_for_transaction,
    reverse_effect,
)
from split_ledger.models import Category, Group, Transaction


@pytest.fixture
def db(tmp_path):
    """Create a temporary database."""
    db = Database(tmp_path / "test.db")
    yield db
    db.close()


@pytest.fixture
def ledger(db):
    return BalanceLedger(db)


def make_group(db: Database, members: list[str]) -> int:
    return db.create_group(
        Group(name="house", created_by=members[0], member_ids=members)
    )


def make_transaction(
    group_id: int,
    members: list[str],
    paid_by: str,
    amount: str,
    owed_to_purchaser: bool = False,
) -> Transaction:
    return Transaction(
        group_id=group_id,
        amount=Decimal(amount),
        paid_by=paid_by,
        category=Category.GROCERIES,
        owed_to_purchaser=owed_to_purchaser,
        split_member_ids=members,
        date=datetime(2025, 1, 20),
    )


def balances_of(ledger: BalanceLedger, group_id: int) -> dict[str, Decimal]:
    return {b.member_id: b.balance for b in ledger.get_balances(group_id)}


class TestAllocateCents:
    """Test even allocation of cents."""

    def test_even_amount(self):
        shares = allocate_cents(3000, ["a", "b", "c"])

        assert shares == {"a": 1000, "b": 1000, "c": 1000}

    def test_remainder_goes_to_lowest_ids_first(self):
        """Leftover cents are handed out in sorted id order."""
        shares = allocate_cents(1000, ["carol", "alice", "bob"])

        assert shares == {"alice": 334, "bob": 333, "carol": 333}

    def test_always_sums_to_total(self):
        for total in (1, 2, 99, 100, 101, 12345):
            assert sum(allocate_cents(total, ["a", "b", "c", "d"]).values()) == total


class TestComputeTransactionEffect:
    """Test balance deltas of a single transaction."""

    def test_even_split_three_members(self):
        """A pays $30 split evenly: A +20, B -10, C -10."""
        effect = compute_transaction_effect(
            ["A", "B", "C"], "A", Decimal("30.00"), owed_to_purchaser=False
        )

        assert effect == {"A": 2000, "B": -1000, "C": -1000}

    def test_owed_to_purchaser_two_members(self):
        """A pays $50 owed back in full: A +50, B -50."""
        effect = compute_transaction_effect(
            ["A", "B"], "A", Decimal("50.00"), owed_to_purchaser=True
        )

        assert effect == {"A": 5000, "B": -5000}

    def test_owed_to_purchaser_splits_among_non_payers(self):
        effect = compute_transaction_effect(
            ["A", "B", "C"], "A", Decimal("10.00"), owed_to_purchaser=True
        )

        assert effect == {"A": 1000, "B": -500, "C": -500}

    def test_uneven_split_still_sums_to_zero(self):
        """$10 across three members cannot split evenly."""
        effect = compute_transaction_effect(
            ["A", "B", "C"], "B", Decimal("10.00"), owed_to_purchaser=False
        )

        assert sum(effect.values()) == 0
        # A takes the odd cent of the three shares
        assert effect == {"A": -334, "B": 667, "C": -333}

    def test_single_member_even_split_is_a_no_op(self):
        effect = compute_transaction_effect(
            ["A"], "A", Decimal("12.00"), owed_to_purchaser=False
        )

        assert effect == {"A": 0}

    def test_single_member_owed_to_purchaser_is_rejected(self):
        with pytest.raises(UnsupportedGroupSizeError):
            compute_transaction_effect(
                ["A"], "A", Decimal("12.00"), owed_to_purchaser=True
            )

    def test_payer_must_be_a_member(self):
        with pytest.raises(ValidationError):
            compute_transaction_effect(
                ["A", "B"], "Z", Decimal("12.00"), owed_to_purchaser=False
            )

    def test_amount_must_be_positive(self):
        with pytest.raises(ValidationError):
            compute_transaction_effect(
                ["A", "B"], "A", Decimal("0.00"), owed_to_purchaser=False
            )

    def test_reverse_is_exact_inverse(self):
        effect = compute_transaction_effect(
            ["A", "B", "C"], "C", Decimal("77.77"), owed_to_purchaser=False
        )
        reversed_effect = reverse_effect(effect)

        for member_id, delta in effect.items():
            assert delta + reversed_effect[member_id] == 0


class TestBalanceLedger:
    """Test applying effects to persisted balances."""

    def test_apply_and_reverse_restores_balances(self, db, ledger):
        members = ["A", "B", "C"]
        group_id = make_group(db, members)
        tx = make_transaction(group_id, members, "A", "30.00")

        ledger.apply_transaction(tx)
        assert balances_of(ledger, group_id) == {
            "A": Decimal("20.00"),
            "B": Decimal("-10.00"),
            "C": Decimal("-10.00"),
        }

        ledger.reverse_transaction(tx)
        assert all(b == 0 for b in balances_of(ledger, group_id).values())

    def test_balances_sum_to_zero_after_many_transactions(self, db, ledger):
        members = ["A", "B", "C"]
        group_id = make_group(db, members)

        for payer, amount, owed in [
            ("A", "10.00", False),
            ("B", "33.33", False),
            ("C", "0.01", False),
            ("A", "19.99", True),
            ("B", "100.01", True),
        ]:
            ledger.apply_transaction(
                make_transaction(group_id, members, payer, amount, owed)
            )

        assert ledger.group_total(group_id) == 0

    def test_reverse_uses_membership_snapshot(self, db, ledger):
        """A member joining later does not change how an old expense reverses."""
        group_id = make_group(db, ["A", "B"])
        tx = make_transaction(group_id, ["A", "B"], "A", "20.00")
        ledger.apply_transaction(tx)

        db.add_group_member(group_id, "C")
        ledger.reverse_transaction(tx)

        assert balances_of(ledger, group_id) == {
            "A": Decimal("0.00"),
            "B": Decimal("0.00"),
            "C": Decimal("0.00"),
        }


class TestRecalculateGroupBalances:
    """Test rebuilding balances from history."""

    def test_rebuild_matches_incremental_balances(self, db, ledger):
        members = ["A", "B", "C"]
        group_id = make_group(db, members)
        for payer, amount in [("A", "30.00"), ("B", "10.00"), ("C", "5.55")]:
            tx = make_transaction(group_id, members, payer, amount)
            tx.id = db.save_transaction(tx)
            ledger.apply_transaction(tx)
        expected = balances_of(ledger, group_id)

        rebuilt = {
            b.member_id: b.balance
            for b in ledger.recalculate_group_balances(group_id)
        }

        assert rebuilt == expected

    def test_rebuild_repairs_drift(self, db, ledger):
        members = ["A", "B"]
        group_id = make_group(db, members)
        tx = make_transaction(group_id, members, "A", "50.00", owed_to_purchaser=True)
        tx.id = db.save_transaction(tx)
        ledger.apply_transaction(tx)

        # Corrupt the stored balance directly
        db.increment_balances(group_id, {"A": 123})

        ledger.recalculate_group_balances(group_id)

        assert balances_of(ledger, group_id) == {
            "A": Decimal("50.00"),
            "B": Decimal("-50.00"),
        }

    def test_rebuild_is_idempotent(self, db, ledger):
        members = ["A", "B"]
        group_id = make_group(db, members)
        tx = make_transaction(group_id, members, "B", "9.99")
        tx.id = db.save_transaction(tx)
        ledger.apply_transaction(tx)

        first = ledger.recalculate_group_balances(group_id)
        second = ledger.recalculate_group_balances(group_id)

        assert first == second

    def test_effect_for_transaction_uses_stored_fields(self):
        tx = make_transaction(1, ["A", "B"], "B", "8.00", owed_to_purchaser=True)

        assert effect_for_transaction(tx) == {"A": -800, "B": 800}
