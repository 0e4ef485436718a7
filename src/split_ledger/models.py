"""Pydantic domain models for split-ledger."""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, Field

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def _check_money(value: Decimal) -> Decimal:
    """Reject sub-cent precision and normalize to two decimal places."""
    if value != value.quantize(CENT):
        raise ValueError(f"Amount {value} has more than two decimal places")
    return value.quantize(CENT)


Money = Annotated[Decimal, AfterValidator(_check_money)]


def _to_local_naive(value: datetime) -> datetime:
    """Convert aware datetimes to naive local time; naive values pass through."""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


# All stored timestamps are naive local time
LocalDatetime = Annotated[datetime, AfterValidator(_to_local_naive)]


def to_cents(amount: Decimal) -> int:
    """
    Convert Decimal dollars to integer cents.
    Uses ROUND_HALF_UP for consistency.

    Args:
        amount: Dollar amount as Decimal

    Returns:
        Amount in cents (integer)
    """
    cents = amount * 100
    return int(cents.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a two-place Decimal."""
    return (Decimal(cents) / 100).quantize(CENT)


# ============================================================================
# Enums
# ============================================================================


class Category(str, Enum):
    """Transaction and budget categories."""

    RENT_MORTGAGE = "Rent/Mortgage"
    UTILITIES = "Utilities"
    GROCERIES = "Groceries"
    HOUSEHOLD = "Household"
    DATE_NIGHT = "Date Night"
    TRAVEL = "Travel"
    TRANSPORTATION = "Transportation"
    MEDICAL = "Medical"
    GIFTS = "Gifts"
    MISCELLANEOUS = "Miscellaneous"
    SETTLEMENT = "Settlement"  # reserved for settlement transactions

    @classmethod
    def user_categories(cls) -> list["Category"]:
        """Categories members can record expenses and budgets against."""
        return [cat for cat in cls if cat is not cls.SETTLEMENT]


class BudgetPeriod(str, Enum):
    """Length of a budget window."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


# ============================================================================
# Ledger Models
# ============================================================================


class Group(BaseModel):
    """A shared-expense group."""

    id: int | None = None
    name: str = Field(min_length=1)
    description: str = ""
    created_by: str
    member_ids: list[str] = Field(default_factory=list)
    created_at: LocalDatetime = Field(default_factory=datetime.now)
    settled_at: LocalDatetime | None = None

    def has_member(self, member_id: str) -> bool:
        """Check whether a member belongs to this group."""
        return member_id in self.member_ids


class MemberBalance(BaseModel):
    """Running balance of one member in one group.

    Positive means the member is owed money; negative means the member owes.
    """

    group_id: int
    member_id: str
    balance: Decimal = ZERO


class Transaction(BaseModel):
    """A single expense (or settlement) event."""

    id: int | None = None
    group_id: int
    amount: Money = Field(gt=0)
    description: str = ""
    notes: str | None = None
    paid_by: str
    category: Category = Category.MISCELLANEOUS
    owed_to_purchaser: bool = False
    is_settlement: bool = False
    has_been_settled: bool = False
    split_member_ids: list[str] = Field(default_factory=list)
    date: LocalDatetime = Field(default_factory=datetime.now)
    created_at: LocalDatetime = Field(default_factory=datetime.now)

    @property
    def is_settlement_linked(self) -> bool:
        """Settlement transactions and settled expenses are immutable."""
        return self.is_settlement or self.has_been_settled


class SettlementResult(BaseModel):
    """Outcome of a settle-up run."""

    group_id: int
    status: Literal["settled", "already_settled"]
    transaction: Transaction | None = None
    settled_transaction_ids: list[int] = Field(default_factory=list)
    amount: Decimal = ZERO
    payer_id: str | None = None
    recipient_id: str | None = None


class UnsettledTotal(BaseModel):
    """Spending recorded since the most recent settlement."""

    group_id: int
    total: Decimal = ZERO
    transaction_count: int = 0


# ============================================================================
# Budget Models
# ============================================================================


class Budget(BaseModel):
    """A spending budget for one category of a group."""

    id: int | None = None
    group_id: int
    category: Category
    amount: Money = Field(ge=0)
    period: BudgetPeriod = BudgetPeriod.MONTHLY
    is_repeating: bool = True
    created_by: str
    is_active: bool = True
    current_period_start: LocalDatetime
    current_period_end: LocalDatetime
    alert_at: int = Field(default=80, ge=0, le=100)  # percent of amount
    created_at: LocalDatetime = Field(default_factory=datetime.now)

    @property
    def effective_start(self) -> datetime:
        """Start of the spending window, never earlier than the budget itself."""
        return max(self.current_period_start, self.created_at)


class PeriodUpdate(BaseModel):
    """Result of checking a budget's period against the clock."""

    budget_id: int | None
    category: Category
    action: Literal["none", "rolled_over", "deactivated"]
    period_start: datetime
    period_end: datetime

    @property
    def updated(self) -> bool:
        return self.action != "none"


class BudgetSnapshot(BaseModel):
    """Spending of a budget within its current period."""

    budget: Budget
    spending: Decimal = ZERO
    remaining: Decimal = ZERO
    percentage_used: Decimal = ZERO
    should_alert: bool = False
    is_over_budget: bool = False
    transaction_count: int = 0
    was_rolled_over: bool = False


class BudgetOverview(BaseModel):
    """Totals across all active budgets of a group."""

    group_id: int
    total_budgeted: Decimal = ZERO
    total_spent: Decimal = ZERO
    total_remaining: Decimal = ZERO
    alert_count: int = 0
    budget_count: int = 0
