"""Balance ledger: per-member running balances and transaction effects.

A transaction's effect is a mapping of member id to a signed delta in integer
cents. Deltas of one transaction always sum to exactly zero, so the balances
of a group sum to zero after any sequence of applies and reverses.
"""

import logging
from decimal import Decimal

from .db import Database
from .exceptions import UnsupportedGroupSizeError, ValidationError
from .models import MemberBalance, Transaction, to_cents

logger = logging.getLogger(__name__)

Effect = dict[str, int]


def allocate_cents(total_cents: int, member_ids: list[str]) -> Effect:
    """
    Split an amount across members as evenly as cents allow.

    Remainder cents go one at a time to members in sorted id order, so the
    allocation is deterministic and always sums to ``total_cents``.

    Args:
        total_cents: Amount to split, in cents
        member_ids: Members sharing the amount

    Returns:
        Mapping of member id to allocated cents
    """
    ordered = sorted(member_ids)
    base, remainder = divmod(total_cents, len(ordered))
    return {
        member_id: base + (1 if index < remainder else 0)
        for index, member_id in enumerate(ordered)
    }


def compute_transaction_effect(
    member_ids: list[str],
    payer_id: str,
    amount: Decimal,
    owed_to_purchaser: bool,
) -> Effect:
    """
    Compute the balance deltas of one transaction.

    - owed_to_purchaser: the payer is owed the whole amount back. The payer
      gains ``amount``; the non-payers split ``amount`` between them.
    - even split: every member owes ``amount / member_count``. The payer
      gains ``amount - own share``; each other member loses their share.

    Args:
        member_ids: Group membership the transaction is split across
        payer_id: Member who paid
        amount: Positive transaction amount
        owed_to_purchaser: Whether the full amount is owed to the payer

    Returns:
        Mapping of member id to delta in cents (sums to zero)

    Raises:
        ValidationError: If the payer is not a member or amount is not positive
        UnsupportedGroupSizeError: If owed_to_purchaser has nobody to owe
    """
    if payer_id not in member_ids:
        raise ValidationError(f"Payer {payer_id} is not a member of the group")

    amount_cents = to_cents(amount)
    if amount_cents <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}")

    members = list(dict.fromkeys(member_ids))

    if owed_to_purchaser:
        non_payers = [m for m in members if m != payer_id]
        if not non_payers:
            raise UnsupportedGroupSizeError(
                len(members),
                "A transaction owed to the purchaser needs at least one other member",
            )
        shares = allocate_cents(amount_cents, non_payers)
        effect = {m: -share for m, share in shares.items()}
        effect[payer_id] = amount_cents
    else:
        shares = allocate_cents(amount_cents, members)
        effect = {m: -share for m, share in shares.items() if m != payer_id}
        effect[payer_id] = amount_cents - shares[payer_id]

    assert sum(effect.values()) == 0, "Transaction effect is not balanced"
    return effect


def reverse_effect(effect: Effect) -> Effect:
    """Exact inverse of an effect."""
    return {member_id: -delta for member_id, delta in effect.items()}


def effect_for_transaction(transaction: Transaction) -> Effect:
    """
    Recompute the effect a stored transaction applied at creation.

    Uses the transaction's own ``split_member_ids`` snapshot and
    ``owed_to_purchaser`` flag, never the group's current membership.
    """
    return compute_transaction_effect(
        member_ids=transaction.split_member_ids,
        payer_id=transaction.paid_by,
        amount=transaction.amount,
        owed_to_purchaser=transaction.owed_to_purchaser,
    )


class BalanceLedger:
    """Applies transaction effects to the persisted member balances."""

    def __init__(self, database: Database):
        """Initialize the ledger."""
        self.db = database

    def apply_transaction_effect(
        self,
        group_id: int,
        member_ids: list[str],
        payer_id: str,
        amount: Decimal,
        owed_to_purchaser: bool,
    ) -> Effect:
        """Apply a transaction's deltas to the group's balances."""
        effect = compute_transaction_effect(
            member_ids, payer_id, amount, owed_to_purchaser
        )
        self.db.increment_balances(group_id, effect)
        logger.debug(f"Applied effect to group {group_id}: {effect}")
        return effect

    def reverse_transaction_effect(
        self,
        group_id: int,
        member_ids: list[str],
        payer_id: str,
        amount: Decimal,
        owed_to_purchaser: bool,
    ) -> Effect:
        """Undo a previously applied effect."""
        effect = reverse_effect(
            compute_transaction_effect(member_ids, payer_id, amount, owed_to_purchaser)
        )
        self.db.increment_balances(group_id, effect)
        logger.debug(f"Reversed effect in group {group_id}: {effect}")
        return effect

    def apply_transaction(self, transaction: Transaction) -> Effect:
        """Apply the effect of a stored transaction."""
        return self.apply_transaction_effect(
            transaction.group_id,
            transaction.split_member_ids,
            transaction.paid_by,
            transaction.amount,
            transaction.owed_to_purchaser,
        )

    def reverse_transaction(self, transaction: Transaction) -> Effect:
        """Reverse the effect of a stored transaction."""
        return self.reverse_transaction_effect(
            transaction.group_id,
            transaction.split_member_ids,
            transaction.paid_by,
            transaction.amount,
            transaction.owed_to_purchaser,
        )

    def get_balances(self, group_id: int) -> list[MemberBalance]:
        """Get all member balances of a group."""
        return self.db.get_member_balances(group_id)

    def group_total(self, group_id: int) -> Decimal:
        """Sum of all balances in a group. Zero unless the ledger is corrupt."""
        return sum(
            (balance.balance for balance in self.get_balances(group_id)),
            Decimal("0.00"),
        )

    def recalculate_group_balances(self, group_id: int) -> list[MemberBalance]:
        """
        Rebuild a group's balances from its full transaction history.

        Idempotent: zeroes every balance and replays every transaction,
        settlement transactions included (a settlement's effect cancels the
        balances it settled). Holds the database write lock throughout so
        it cannot interleave with incremental updates.

        Args:
            group_id: Group to rebuild

        Returns:
            The rebuilt balances
        """
        with self.db.transaction():
            group = self.db.get_group(group_id)
            member_ids = group.member_ids if group else []

            self.db.reset_balances(group_id, member_ids)

            totals: Effect = {}
            transactions = self.db.list_transactions(group_id, newest_first=False)
            for transaction in transactions:
                for member_id, delta in effect_for_transaction(transaction).items():
                    totals[member_id] = totals.get(member_id, 0) + delta

            self.db.increment_balances(group_id, totals)

        logger.info(
            f"Recalculated balances for group {group_id} "
            f"from {len(transactions)} transactions"
        )
        return self.get_balances(group_id)
