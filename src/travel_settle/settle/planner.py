"""Settlement planning: turn member balances into a short list of transfers."""

import heapq
import logging
from decimal import Decimal
from typing import Protocol

from ..exceptions import InternalInvariantViolation
from ..models import Balance, Settlement
from .rounding import is_effectively_zero, round_money

logger = logging.getLogger(__name__)


class SettlementStrategy(Protocol):
    """A way of turning balances into transfers."""

    name: str

    def plan(self, balances: list[Balance], precision: int) -> list[Settlement]: ...


class GreedyMaxMatch:
    """Greedy largest-debtor / largest-creditor matching.

    Finding the true minimum number of transfers is NP-hard. Repeatedly
    matching the largest debt with the largest credit runs in O(n log n) and
    yields at most N - 1 transfers for N members with a non-zero balance,
    which is good but not always the theoretical minimum.

    Ties between equal debts (or credits) go to the member that comes first
    in the input, so the same balances always give the same plan.
    """

    name = "greedy-max-match"

    def plan(self, balances: list[Balance], precision: int) -> list[Settlement]:
        """
        Compute transfers that bring every balance to zero.

        The input records are never modified; the algorithm works on rounded
        copies of their balances.

        Args:
            balances: Member balances (should sum to zero)
            precision: Decimal places of the reporting currency

        Returns:
            Ordered list of settlements

        Raises:
            InternalInvariantViolation: If the matching loop fails to converge
        """
        remaining: dict[int, Decimal] = {}
        # Heap entries are (sort key, input index): most negative debt first,
        # largest credit first, then input order
        debtors: list[tuple[Decimal, int]] = []
        creditors: list[tuple[Decimal, int]] = []

        for index, record in enumerate(balances):
            amount = round_money(record.balance, precision)
            if is_effectively_zero(amount, precision):
                continue
            remaining[index] = amount
            if amount < 0:
                heapq.heappush(debtors, (amount, index))
            else:
                heapq.heappush(creditors, (-amount, index))

        settlements: list[Settlement] = []
        max_iterations = 2 * len(remaining)
        iterations = 0

        while debtors and creditors:
            iterations += 1
            if iterations > max_iterations:
                raise InternalInvariantViolation(
                    f"Settlement did not converge after {max_iterations} "
                    f"iterations ({len(debtors)} debtors, {len(creditors)} "
                    f"creditors left)"
                )

            _, debtor = heapq.heappop(debtors)
            _, creditor = heapq.heappop(creditors)

            amount = round_money(
                min(-remaining[debtor], remaining[creditor]), precision
            )
            settlements.append(
                Settlement(
                    from_member=balances[debtor].member,
                    to_member=balances[creditor].member,
                    amount=amount,
                )
            )

            remaining[debtor] += amount
            remaining[creditor] -= amount

            if not is_effectively_zero(remaining[debtor], precision):
                heapq.heappush(debtors, (remaining[debtor], debtor))
            if not is_effectively_zero(remaining[creditor], precision):
                heapq.heappush(creditors, (-remaining[creditor], creditor))

        leftover = [remaining[index] for _, index in debtors + creditors]
        if leftover:
            logger.warning(
                f"Balances do not sum to zero: {sum(leftover, Decimal('0'))} "
                f"left unsettled across {len(leftover)} members"
            )

        logger.debug(
            f"Planned {len(settlements)} settlements for {len(remaining)} "
            f"non-zero balances"
        )

        return settlements


def plan_settlements(
    balances: list[Balance],
    precision: int,
    strategy: SettlementStrategy | None = None,
) -> list[Settlement]:
    """Plan settlements with the given strategy (GreedyMaxMatch by default)."""
    return (strategy or GreedyMaxMatch()).plan(balances, precision)


def apply_settlements(
    balances: list[Balance], settlements: list[Settlement]
) -> dict[str, Decimal]:
    """
    Apply a plan to balances and return what is left per member.

    A payer's balance goes up by the amount, the receiver's goes down.

    Args:
        balances: Balances the plan was computed from
        settlements: Transfers to apply

    Returns:
        Remaining balance keyed by member ID (all zero for a complete plan)
    """
    remaining = {record.member_id: record.balance for record in balances}
    for settlement in settlements:
        remaining[settlement.from_member.member_id] += settlement.amount
        remaining[settlement.to_member.member_id] -= settlement.amount
    return remaining
