"""Budget tracking: period windows, lazy rollover and spending aggregation."""

import calendar
import logging
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from .db import Database
from .exceptions import ConflictError, NotFoundError, ValidationError
from .models import (
    CENT,
    ZERO,
    Budget,
    BudgetOverview,
    BudgetPeriod,
    BudgetSnapshot,
    Category,
    PeriodUpdate,
    Transaction,
)

logger = logging.getLogger(__name__)


def _last_day_of_month(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def calculate_period_dates(
    period: BudgetPeriod, base_date: datetime
) -> tuple[datetime, datetime]:
    """
    Compute the budget window containing ``base_date``.

    - weekly: Monday through Sunday
    - monthly: calendar month
    - quarterly: three-month block starting Jan/Apr/Jul/Oct
    - yearly: calendar year

    Args:
        period: Window length
        base_date: Any moment inside the wanted window

    Returns:
        Tuple of (start at 00:00:00, end at 23:59:59.999999)
    """
    day = base_date.date()

    if period == BudgetPeriod.WEEKLY:
        start = day - timedelta(days=day.weekday())
        end = start + timedelta(days=6)
    elif period == BudgetPeriod.MONTHLY:
        start = day.replace(day=1)
        end = _last_day_of_month(day.year, day.month)
    elif period == BudgetPeriod.QUARTERLY:
        first_month = (day.month - 1) // 3 * 3 + 1
        start = date(day.year, first_month, 1)
        end = _last_day_of_month(day.year, first_month + 2)
    elif period == BudgetPeriod.YEARLY:
        start = date(day.year, 1, 1)
        end = date(day.year, 12, 31)
    else:
        raise ValidationError(f"Unknown budget period: {period}")

    return datetime.combine(start, time.min), datetime.combine(end, time.max)


def update_period_if_needed(budget: Budget, now: datetime) -> PeriodUpdate:
    """
    Bring a budget's window up to date with the clock.

    Mutates ``budget`` in place:
    - expired and repeating: advance window by window, each starting the day
      after the previous end, until the window contains ``now``
    - expired and not repeating: deactivate, no new window
    - otherwise: unchanged

    Args:
        budget: The budget to check
        now: Current time

    Returns:
        What happened to the budget
    """
    action = "none"

    if budget.is_active and now > budget.current_period_end:
        if budget.is_repeating:
            while now > budget.current_period_end:
                next_day = budget.current_period_end.date() + timedelta(days=1)
                start, end = calculate_period_dates(
                    budget.period, datetime.combine(next_day, time.min)
                )
                budget.current_period_start = start
                budget.current_period_end = end
            action = "rolled_over"
        else:
            budget.is_active = False
            action = "deactivated"

    return PeriodUpdate(
        budget_id=budget.id,
        category=budget.category,
        action=action,
        period_start=budget.current_period_start,
        period_end=budget.current_period_end,
    )


def counts_toward(budget: Budget, transaction: Transaction) -> bool:
    """Whether a transaction is spending inside the budget's current window."""
    return (
        transaction.group_id == budget.group_id
        and transaction.category == budget.category
        and not transaction.is_settlement
        and budget.effective_start <= transaction.date <= budget.current_period_end
    )


def summarize_spending(
    budget: Budget,
    transactions: Iterable[Transaction],
    was_rolled_over: bool = False,
) -> BudgetSnapshot:
    """
    Compute spending and alert state of a budget.

    This is a pure function; ``transactions`` may include records outside
    the budget, which are filtered out.
    """
    matching = [tx for tx in transactions if counts_toward(budget, tx)]
    spending = sum((tx.amount for tx in matching), ZERO)

    if budget.amount > 0:
        percentage = spending * 100 / budget.amount
    else:
        percentage = ZERO

    return BudgetSnapshot(
        budget=budget,
        spending=spending,
        remaining=budget.amount - spending,
        percentage_used=percentage.quantize(CENT),
        should_alert=percentage >= budget.alert_at,
        is_over_budget=spending > budget.amount,
        transaction_count=len(matching),
        was_rolled_over=was_rolled_over,
    )


class BudgetTracker:
    """Manages budgets and their spending windows."""

    def __init__(self, database: Database, default_alert_at: int = 80):
        """Initialize the tracker."""
        self.db = database
        self.default_alert_at = default_alert_at

    # ========================================================================
    # Budget lifecycle
    # ========================================================================

    def create_budget(
        self,
        group_id: int,
        category: Category,
        amount: Decimal,
        created_by: str,
        period: BudgetPeriod = BudgetPeriod.MONTHLY,
        is_repeating: bool = True,
        alert_at: int | None = None,
        now: datetime | None = None,
    ) -> Budget:
        """
        Create a budget whose first window contains ``now``.

        Raises:
            ValidationError: For the reserved settlement category or bad values
            ConflictError: If the category already has an active budget
        """
        now = now or datetime.now()
        if category == Category.SETTLEMENT:
            raise ValidationError("Settlements cannot be budgeted")

        if self.db.find_active_budget(group_id, category):
            raise ConflictError(
                f"Budget already exists for {category.value}. "
                f"Update the existing budget instead."
            )

        start, end = calculate_period_dates(period, now)
        budget = Budget(
            group_id=group_id,
            category=category,
            amount=amount,
            period=period,
            is_repeating=is_repeating,
            created_by=created_by,
            current_period_start=start,
            current_period_end=end,
            alert_at=self.default_alert_at if alert_at is None else alert_at,
            created_at=now,
        )
        budget.id = self.db.save_budget(budget)

        logger.info(
            f"Created {period.value} budget {budget.id} for {category.value}: "
            f"${budget.amount} ({start.date()} - {end.date()})"
        )
        return budget

    def get_budget(self, budget_id: int) -> Budget:
        """Get a budget by ID."""
        budget = self.db.get_budget(budget_id)
        if budget is None:
            raise NotFoundError("Budget", budget_id)
        return budget

    def update_budget(
        self,
        budget_id: int,
        amount: Decimal | None = None,
        period: BudgetPeriod | None = None,
        alert_at: int | None = None,
        is_active: bool | None = None,
        is_repeating: bool | None = None,
        now: datetime | None = None,
    ) -> Budget:
        """
        Change a budget's settings.

        A new period length restarts the window around ``now``.
        """
        now = now or datetime.now()
        budget = self.get_budget(budget_id)

        changes = budget.model_dump()
        if amount is not None:
            changes["amount"] = amount
        if alert_at is not None:
            changes["alert_at"] = alert_at
        if is_repeating is not None:
            changes["is_repeating"] = is_repeating
        if is_active is not None:
            if is_active and not budget.is_active:
                other = self.db.find_active_budget(budget.group_id, budget.category)
                if other and other.id != budget.id:
                    raise ConflictError(
                        f"Another active budget exists for {budget.category.value}"
                    )
            changes["is_active"] = is_active
        if period is not None and period != budget.period:
            start, end = calculate_period_dates(period, now)
            changes.update(
                period=period, current_period_start=start, current_period_end=end
            )

        updated = Budget.model_validate(changes)
        self.db.update_budget(updated)
        logger.info(f"Updated budget {budget_id} ({updated.category.value})")
        return updated

    def delete_budget(self, budget_id: int) -> Budget:
        """Delete a budget."""
        budget = self.get_budget(budget_id)
        self.db.delete_budget(budget_id)
        logger.info(f"Deleted budget {budget_id} ({budget.category.value})")
        return budget

    # ========================================================================
    # Period maintenance
    # ========================================================================

    def refresh_period(self, budget: Budget, now: datetime) -> PeriodUpdate:
        """Run the period check on a budget and persist any transition."""
        result = update_period_if_needed(budget, now)

        if result.action == "rolled_over":
            self.db.update_budget(budget)
            logger.info(
                f"Rolled over budget {budget.id} ({budget.category.value}) to "
                f"{result.period_start.date()} - {result.period_end.date()}"
            )
        elif result.action == "deactivated":
            self.db.update_budget(budget)
            logger.info(
                f"Deactivated non-repeating budget {budget.id} "
                f"({budget.category.value})"
            )

        return result

    def sweep_budget_periods(self, now: datetime | None = None) -> list[PeriodUpdate]:
        """
        Bring every active budget up to date.

        Reads already advance periods lazily; this is an optional batch pass.
        """
        now = now or datetime.now()
        with self.db.transaction():
            updates = [
                self.refresh_period(budget, now)
                for budget in self.db.list_budgets(active_only=True)
            ]
        changed = [update for update in updates if update.updated]
        logger.info(f"Swept {len(updates)} budgets, {len(changed)} changed")
        return changed

    # ========================================================================
    # Spending
    # ========================================================================

    def calculate_budget_spending(
        self, budget: Budget, now: datetime | None = None
    ) -> BudgetSnapshot:
        """Spending of one budget in its (refreshed) current window."""
        now = now or datetime.now()
        result = self.refresh_period(budget, now)

        transactions = self.db.find_spending_transactions(
            [budget.group_id],
            [budget.category],
            budget.effective_start,
            budget.current_period_end,
        )
        return summarize_spending(
            budget, transactions, was_rolled_over=result.action == "rolled_over"
        )

    def calculate_spending_for_budgets(
        self, budgets: list[Budget], now: datetime | None = None
    ) -> list[BudgetSnapshot]:
        """
        Spending of many budgets with a single transaction query.

        Produces the same snapshot per budget as calculate_budget_spending.
        Budgets deactivated by the period check are left out.
        """
        now = now or datetime.now()
        results = {id(budget): self.refresh_period(budget, now) for budget in budgets}
        active = [budget for budget in budgets if budget.is_active]
        if not active:
            return []

        transactions = self.db.find_spending_transactions(
            [budget.group_id for budget in active],
            [budget.category for budget in active],
            min(budget.effective_start for budget in active),
            max(budget.current_period_end for budget in active),
        )

        return [
            summarize_spending(
                budget,
                transactions,
                was_rolled_over=results[id(budget)].action == "rolled_over",
            )
            for budget in active
        ]

    def get_budget_snapshot(
        self, group_id: int, category: Category, now: datetime | None = None
    ) -> BudgetSnapshot:
        """
        Spending of the active budget for a group's category.

        Raises:
            NotFoundError: If there is no active budget, including one that
                this read just deactivated
        """
        now = now or datetime.now()
        budget = self.db.find_active_budget(group_id, category)
        if budget is None:
            raise NotFoundError("Budget", f"{group_id}/{category.value}")

        snapshot = self.calculate_budget_spending(budget, now)
        if not snapshot.budget.is_active:
            raise NotFoundError(
                "Budget",
                f"{group_id}/{category.value}",
                f"Budget for {category.value} expired and was deactivated",
            )
        return snapshot

    def list_budgets(
        self, group_id: int, now: datetime | None = None
    ) -> list[BudgetSnapshot]:
        """All active budgets of a group with their spending."""
        return self.calculate_spending_for_budgets(
            self.db.list_budgets(group_id, active_only=True), now
        )

    def get_overview(
        self, group_id: int, now: datetime | None = None
    ) -> BudgetOverview:
        """Totals across a group's active budgets."""
        snapshots = self.list_budgets(group_id, now)
        overview = BudgetOverview(group_id=group_id, budget_count=len(snapshots))
        for snapshot in snapshots:
            overview.total_budgeted += snapshot.budget.amount
            overview.total_spent += snapshot.spending
            overview.total_remaining += snapshot.remaining
            if snapshot.should_alert or snapshot.is_over_budget:
                overview.alert_count += 1
        return overview

    def get_categories(self) -> list[Category]:
        """Categories available for budgets and expenses."""
        return Category.user_categories()
