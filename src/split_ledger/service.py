"""Service layer that composes the ledger, settlement and budget components.

This module provides the operations callers use: it validates input, checks
group membership, runs each mutation as one database transaction and then
broadcasts change notifications on a best-effort basis.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from .budgets import BudgetTracker
from .clients.notifier import (
    BALANCE_UPDATE,
    BUDGET_ALERT,
    BUDGET_CREATED,
    BUDGET_DELETED,
    BUDGET_UPDATED,
    GROUP_SETTLED,
    TRANSACTION_UPDATE,
    Broadcaster,
    build_broadcaster,
    group_room,
)
from .config import Settings
from .db import Database
from .exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    SplitLedgerError,
    ValidationError,
)
from .ledger import BalanceLedger
from .models import (
    ZERO,
    Budget,
    BudgetOverview,
    BudgetPeriod,
    BudgetSnapshot,
    Category,
    Group,
    MemberBalance,
    PeriodUpdate,
    SettlementResult,
    Transaction,
    UnsettledTotal,
)
from .settlement import SettlementEngine

logger = logging.getLogger(__name__)


def _to_amount(value: Decimal | int | str | float) -> Decimal:
    """Parse a user-supplied amount."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount


class LedgerService:
    """Operations on groups, transactions, balances, settlements and budgets."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        broadcaster: Broadcaster | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the service."""
        self.settings = settings
        self.db = database
        self.broadcaster = broadcaster or build_broadcaster(settings)
        self.clock = clock

        self.ledger = BalanceLedger(database)
        self.settlement = SettlementEngine(database, settings.settlement_epsilon)
        self.budgets = BudgetTracker(database, settings.default_alert_at)

    # ========================================================================
    # Groups
    # ========================================================================

    def create_group(
        self, name: str, created_by: str, description: str = ""
    ) -> Group:
        """Create a group whose creator is its first member."""
        if self.db.get_group_by_name(name):
            raise ConflictError(f"A group named {name!r} already exists")

        try:
            group = Group(
                name=name,
                description=description,
                created_by=created_by,
                member_ids=[created_by],
                created_at=self.clock(),
            )
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        group.id = self.db.create_group(group)
        logger.info(f"Created group {group.id} ({name}) for {created_by}")
        return group

    def get_group(self, group_id: int) -> Group:
        """Get a group by ID."""
        group = self.db.get_group(group_id)
        if group is None:
            raise NotFoundError("Group", group_id)
        return group

    def add_member(self, group_id: int, member_id: str) -> Group:
        """Join a member to a group with a zero balance."""
        group = self.get_group(group_id)
        if group.has_member(member_id):
            raise ConflictError(f"{member_id} is already a member of this group")

        self.db.add_group_member(group_id, member_id, self.clock())
        logger.info(f"Added {member_id} to group {group_id}")
        return self.get_group(group_id)

    def _require_member(self, group: Group, member_id: str):
        if not group.has_member(member_id):
            raise AuthorizationError(f"{member_id} is not a member of this group")

    # ========================================================================
    # Transactions
    # ========================================================================

    def record_transaction(
        self,
        group_id: int,
        payer_id: str,
        amount: Decimal | int | str | float,
        category: Category = Category.MISCELLANEOUS,
        owed_to_purchaser: bool = False,
        description: str = "",
        notes: str | None = None,
        date: datetime | None = None,
    ) -> Transaction:
        """
        Record an expense and apply its effect to the group's balances.

        Args:
            group_id: Group the expense belongs to
            payer_id: Member who paid
            amount: Positive amount
            category: Expense category
            owed_to_purchaser: Whether the full amount is owed to the payer
            description: Short description
            notes: Free-form notes
            date: When the expense happened (defaults to now)

        Returns:
            The stored transaction

        Raises:
            NotFoundError: If the group does not exist
            ValidationError: If the amount is not positive or the payer is
                not a member
            UnsupportedGroupSizeError: If owed_to_purchaser in a one-member group
        """
        group = self.get_group(group_id)
        value = _to_amount(amount)
        if value <= 0:
            raise ValidationError("Valid amount is required")
        if not group.has_member(payer_id):
            raise ValidationError(f"{payer_id} is not a member of this group")
        if category == Category.SETTLEMENT:
            raise ValidationError("Settlement transactions are created by settle-up")

        now = self.clock()
        try:
            transaction = Transaction(
                group_id=group_id,
                amount=value,
                description=description,
                notes=notes,
                paid_by=payer_id,
                category=category,
                owed_to_purchaser=owed_to_purchaser,
                split_member_ids=list(group.member_ids),
                date=date or now,
                created_at=now,
            )
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        with self.db.transaction():
            transaction.id = self.db.save_transaction(transaction)
            self.ledger.apply_transaction(transaction)

        logger.info(
            f"Recorded transaction {transaction.id} in group {group_id}: "
            f"{payer_id} paid ${transaction.amount} ({category.value})"
        )

        self._notify(
            group_id,
            TRANSACTION_UPDATE,
            {"type": "created", "transaction": transaction.model_dump(mode="json")},
        )
        self._notify_balances(group_id)
        try:
            self._check_budget_impact(transaction)
        except SplitLedgerError as e:
            logger.warning(
                f"Budget check failed for transaction {transaction.id}: {e}"
            )

        return transaction

    def get_transaction(self, transaction_id: int) -> Transaction:
        """Get a transaction by ID."""
        transaction = self.db.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    def _editable_transaction(
        self, transaction_id: int, requester_id: str, action: str
    ) -> Transaction:
        transaction = self.get_transaction(transaction_id)
        if transaction.paid_by != requester_id:
            raise AuthorizationError(f"Not authorized to {action} this transaction")
        if transaction.is_settlement_linked:
            raise ConflictError(
                f"Cannot {action} transaction {transaction_id}: it is part of a "
                f"settlement"
            )
        return transaction

    def update_transaction(
        self,
        transaction_id: int,
        requester_id: str,
        amount: Decimal | int | str | float | None = None,
        description: str | None = None,
        notes: str | None = None,
        category: Category | None = None,
    ) -> Transaction:
        """
        Edit an unsettled transaction.

        A changed amount swaps the old balance effect for the new one.
        """
        changes: dict[str, Any] = {}
        if amount is not None:
            value = _to_amount(amount)
            if value <= 0:
                raise ValidationError("Valid amount is required")
            changes["amount"] = value
        if description is not None:
            changes["description"] = description
        if notes is not None:
            changes["notes"] = notes
        if category is not None:
            if category == Category.SETTLEMENT:
                raise ValidationError("Settlement category is reserved")
            changes["category"] = category

        # The settlement check and the write share one write lock
        with self.db.transaction():
            existing = self._editable_transaction(
                transaction_id, requester_id, "update"
            )
            try:
                updated = Transaction.model_validate(existing.model_dump() | changes)
            except PydanticValidationError as e:
                raise ValidationError(str(e)) from e

            if updated.amount != existing.amount:
                self.ledger.reverse_transaction(existing)
                self.ledger.apply_transaction(updated)
            self.db.update_transaction(updated)

        logger.info(f"Updated transaction {transaction_id}")

        self._notify(
            updated.group_id,
            TRANSACTION_UPDATE,
            {"type": "updated", "transaction": updated.model_dump(mode="json")},
        )
        if updated.amount != existing.amount:
            self._notify_balances(updated.group_id)

        return updated

    def delete_transaction(self, transaction_id: int, requester_id: str) -> None:
        """
        Delete an unsettled transaction and reverse its balance effect.

        Raises:
            NotFoundError: If the transaction does not exist
            AuthorizationError: If the requester is not the payer
            ConflictError: If the transaction is part of a settlement
        """
        with self.db.transaction():
            transaction = self._editable_transaction(
                transaction_id, requester_id, "delete"
            )
            self.ledger.reverse_transaction(transaction)
            self.db.delete_transaction(transaction_id)

        logger.info(f"Deleted transaction {transaction_id}")

        self._notify(
            transaction.group_id,
            TRANSACTION_UPDATE,
            {"type": "deleted", "transaction_id": transaction_id},
        )
        self._notify_balances(transaction.group_id)

    def list_transactions(self, group_id: int) -> list[Transaction]:
        """All transactions of a group, newest first."""
        self.get_group(group_id)
        return self.db.list_transactions(group_id, newest_first=True)

    def get_unsettled_total(self, group_id: int) -> UnsettledTotal:
        """Sum of the transactions recorded since the latest settlement."""
        total = UnsettledTotal(group_id=group_id)
        for transaction in self.list_transactions(group_id):
            if transaction.is_settlement:
                break
            total.total += transaction.amount
            total.transaction_count += 1
        return total

    # ========================================================================
    # Balances and settlement
    # ========================================================================

    def get_balances(self, group_id: int) -> list[MemberBalance]:
        """Current member balances of a group."""
        self.get_group(group_id)
        return self.ledger.get_balances(group_id)

    def recalculate_balances(self, group_id: int) -> list[MemberBalance]:
        """Rebuild a group's balances from its transaction history."""
        self.get_group(group_id)
        balances = self.ledger.recalculate_group_balances(group_id)
        self._notify_balances(group_id)
        return balances

    def settle(
        self, group_id: int, requester_id: str | None = None
    ) -> SettlementResult:
        """
        Settle a two-member group.

        Raises:
            NotFoundError: If the group does not exist
            AuthorizationError: If the requester is not a member
            UnsupportedGroupSizeError: If the group does not have two members
            StateInconsistencyError: If the ledger is in an unexpected state
        """
        if requester_id is not None:
            self._require_member(self.get_group(group_id), requester_id)

        result = self.settlement.settle(group_id, now=self.clock())

        if result.status == "settled":
            self._notify(
                group_id,
                GROUP_SETTLED,
                {
                    "settled_by": requester_id,
                    "settlement": result.model_dump(mode="json"),
                },
            )
            self._notify_balances(group_id)

        return result

    # ========================================================================
    # Budgets
    # ========================================================================

    def create_budget(
        self,
        group_id: int,
        requester_id: str,
        category: Category,
        amount: Decimal | int | str | float,
        period: BudgetPeriod = BudgetPeriod.MONTHLY,
        is_repeating: bool = True,
        alert_at: int | None = None,
    ) -> Budget:
        """Create a budget for one of a group's categories."""
        self._require_member(self.get_group(group_id), requester_id)

        try:
            budget = self.budgets.create_budget(
                group_id=group_id,
                category=category,
                amount=_to_amount(amount),
                created_by=requester_id,
                period=period,
                is_repeating=is_repeating,
                alert_at=alert_at,
                now=self.clock(),
            )
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        self._notify(
            group_id, BUDGET_CREATED, {"budget": budget.model_dump(mode="json")}
        )
        return budget

    def update_budget(
        self,
        budget_id: int,
        requester_id: str,
        amount: Decimal | int | str | float | None = None,
        period: BudgetPeriod | None = None,
        alert_at: int | None = None,
        is_active: bool | None = None,
        is_repeating: bool | None = None,
    ) -> Budget:
        """Change a budget's settings."""
        budget = self.budgets.get_budget(budget_id)
        self._require_member(self.get_group(budget.group_id), requester_id)

        try:
            updated = self.budgets.update_budget(
                budget_id,
                amount=None if amount is None else _to_amount(amount),
                period=period,
                alert_at=alert_at,
                is_active=is_active,
                is_repeating=is_repeating,
                now=self.clock(),
            )
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        self._notify(
            updated.group_id, BUDGET_UPDATED, {"budget": updated.model_dump(mode="json")}
        )
        return updated

    def delete_budget(self, budget_id: int, requester_id: str) -> None:
        """Delete a budget."""
        budget = self.budgets.get_budget(budget_id)
        self._require_member(self.get_group(budget.group_id), requester_id)

        self.budgets.delete_budget(budget_id)

        self._notify(
            budget.group_id,
            BUDGET_DELETED,
            {"budget_id": budget_id, "category": budget.category.value},
        )

    def get_budget_snapshot(self, group_id: int, category: Category) -> BudgetSnapshot:
        """Spending of the group's active budget for a category."""
        self.get_group(group_id)
        return self.budgets.get_budget_snapshot(group_id, category, now=self.clock())

    def get_budget(self, budget_id: int) -> BudgetSnapshot:
        """Spending of a budget by ID (inactive budgets report their last period)."""
        budget = self.budgets.get_budget(budget_id)
        return self.budgets.calculate_budget_spending(budget, now=self.clock())

    def list_budgets(self, group_id: int) -> list[BudgetSnapshot]:
        """Active budgets of a group with their spending."""
        self.get_group(group_id)
        return self.budgets.list_budgets(group_id, now=self.clock())

    def get_budget_overview(self, group_id: int) -> BudgetOverview:
        """Totals across a group's active budgets."""
        self.get_group(group_id)
        return self.budgets.get_overview(group_id, now=self.clock())

    def get_categories(self) -> list[Category]:
        """Categories members can use."""
        return self.budgets.get_categories()

    def sweep_budget_periods(self) -> list[PeriodUpdate]:
        """Advance or deactivate every expired budget."""
        return self.budgets.sweep_budget_periods(now=self.clock())

    # ========================================================================
    # Notifications
    # ========================================================================

    def _notify(self, group_id: int, event: str, payload: dict[str, Any]) -> None:
        """Broadcast an event; failures are logged, never raised."""
        message = {
            **payload,
            "group_id": group_id,
            "timestamp": self.clock().isoformat(),
        }
        try:
            self.broadcaster.emit(group_room(group_id), event, message)
        except (SplitLedgerError, httpx.HTTPError) as e:
            logger.warning(f"Failed to emit {event} for group {group_id}: {e}")

    def _notify_balances(self, group_id: int) -> None:
        balances = self.ledger.get_balances(group_id)
        self._notify(
            group_id,
            BALANCE_UPDATE,
            {"balances": [balance.model_dump(mode="json") for balance in balances]},
        )

    def _check_budget_impact(self, transaction: Transaction) -> None:
        """Alert the group when an expense pushes its budget past a threshold."""
        budget = self.db.find_active_budget(transaction.group_id, transaction.category)
        if budget is None:
            return

        snapshot = self.budgets.calculate_budget_spending(budget, now=self.clock())
        if not snapshot.budget.is_active:
            return

        if snapshot.is_over_budget:
            alert_type, severity = "budget_exceeded", "critical"
        elif snapshot.should_alert:
            alert_type, severity = "threshold_reached", "warning"
        else:
            return

        over_amount = snapshot.spending - snapshot.budget.amount
        self._notify(
            transaction.group_id,
            BUDGET_ALERT,
            {
                "type": alert_type,
                "severity": severity,
                "budget": snapshot.budget.model_dump(mode="json"),
                "transaction": transaction.model_dump(mode="json"),
                "spending": {
                    "current": str(snapshot.spending),
                    "percentage": str(snapshot.percentage_used),
                    "over_amount": str(over_amount) if over_amount > ZERO else None,
                },
            },
        )
        logger.info(
            f"Budget alert ({alert_type}) for {budget.category.value} in group "
            f"{transaction.group_id}: {snapshot.percentage_used}% used"
        )
