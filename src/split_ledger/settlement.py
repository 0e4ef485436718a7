"""Settlement engine for two-member groups."""

import logging
from datetime import datetime
from decimal import Decimal

from .db import Database
from .exceptions import (
    NotFoundError,
    StateInconsistencyError,
    UnsupportedGroupSizeError,
)
from .models import ZERO, Category, SettlementResult, Transaction

logger = logging.getLogger(__name__)

SETTLEMENT_GROUP_SIZE = 2


class SettlementEngine:
    """Nets a two-member group's balances to zero with one transaction."""

    def __init__(self, database: Database, epsilon: Decimal = Decimal("0.01")):
        """Initialize the engine."""
        self.db = database
        self.epsilon = epsilon

    def settle(self, group_id: int, now: datetime | None = None) -> SettlementResult:
        """
        Settle a group's outstanding balances.

        Steps, all inside one write transaction:
        1. Require exactly two members
        2. No-op if every balance is within epsilon of zero
        3. Identify the single payer (owes) and recipient (is owed)
        4. Flag the unsettled tail of the history as settled, walking
           newest-to-oldest and stopping at the previous settlement
        5. Record the settlement transaction
        6. Zero every balance of the group

        Holding the write lock for the whole sequence serializes concurrent
        settlements; the later one sees zero balances and reports
        ``already_settled``.

        Args:
            group_id: Group to settle
            now: Settlement time (defaults to the current time)

        Returns:
            Settlement outcome

        Raises:
            NotFoundError: If the group does not exist
            UnsupportedGroupSizeError: If the group does not have two members
            StateInconsistencyError: If balances cannot be explained by one
                payer and one recipient
        """
        now = now or datetime.now()

        with self.db.transaction():
            group = self.db.get_group(group_id)
            if group is None:
                raise NotFoundError("Group", group_id)

            if len(group.member_ids) != SETTLEMENT_GROUP_SIZE:
                raise UnsupportedGroupSizeError(len(group.member_ids))

            balances = {member_id: ZERO for member_id in group.member_ids}
            for member_balance in self.db.get_member_balances(group_id):
                balances[member_balance.member_id] = member_balance.balance

            if all(abs(balance) <= self.epsilon for balance in balances.values()):
                logger.info(f"Group {group_id} is already settled")
                return SettlementResult(group_id=group_id, status="already_settled")

            payer_id, recipient_id = self._identify_parties(group_id, balances)
            amount = abs(balances[payer_id])

            settled_ids = []
            for transaction in self.db.list_transactions(group_id, newest_first=True):
                if transaction.is_settlement:
                    break
                if transaction.id is not None:
                    settled_ids.append(transaction.id)
            self.db.mark_transactions_settled(settled_ids)

            settlement = Transaction(
                group_id=group_id,
                amount=amount,
                description=f"Settlement: {payer_id} paid {recipient_id}",
                notes=f"{payer_id} paid {recipient_id} back.",
                paid_by=payer_id,
                category=Category.SETTLEMENT,
                owed_to_purchaser=True,
                is_settlement=True,
                has_been_settled=True,
                split_member_ids=list(group.member_ids),
                date=now,
                created_at=now,
            )
            settlement.id = self.db.save_transaction(settlement)

            self.db.reset_balances(group_id, group.member_ids)
            self.db.set_group_settled_at(group_id, now)

        logger.info(
            f"Settled group {group_id}: {payer_id} pays {recipient_id} ${amount} "
            f"({len(settled_ids)} transactions settled)"
        )

        return SettlementResult(
            group_id=group_id,
            status="settled",
            transaction=settlement,
            settled_transaction_ids=settled_ids,
            amount=amount,
            payer_id=payer_id,
            recipient_id=recipient_id,
        )

    def _identify_parties(
        self, group_id: int, balances: dict[str, Decimal]
    ) -> tuple[str, str]:
        """Find the one member who owes and the one who is owed."""
        payers = [m for m, balance in balances.items() if balance < -self.epsilon]
        recipients = [m for m, balance in balances.items() if balance > self.epsilon]
        total = sum(balances.values(), ZERO)

        if len(payers) != 1 or len(recipients) != 1 or total != ZERO:
            shown = {m: str(b) for m, b in balances.items()}
            logger.error(
                f"Ledger of group {group_id} is inconsistent, refusing to settle: "
                f"balances={shown} total={total}"
            )
            raise StateInconsistencyError(
                f"Cannot identify exactly one payer and one recipient in group "
                f"{group_id} (balances sum to {total})"
            )

        return payers[0], recipients[0]
