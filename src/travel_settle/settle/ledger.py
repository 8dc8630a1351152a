"""Ledger aggregation: per-member balances in the project reporting currency."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal

from ..exceptions import InternalInvariantViolation, ValidationError
from ..models import Balance, ExchangeRatePolicy, Expense, Member, RateQuote
from .rates import ExchangeRateResolver
from .rounding import currency_precision, round_money, tolerance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConvertedExpense:
    """An expense with every amount converted into the reporting currency."""

    expense_id: str
    payer_member_id: str
    amount: Decimal
    shares: tuple[tuple[str, Decimal], ...] = field(default_factory=tuple)
    rate: Decimal = Decimal("1")

    @property
    def share_total(self) -> Decimal:
        return sum((amount for _, amount in self.shares), Decimal("0"))


def collect_currencies(expenses: Iterable[Expense]) -> set[str]:
    """Distinct currencies used across a list of expenses."""
    return {expense.currency for expense in expenses}


def _rate_for(
    currency: str, policy: ExchangeRatePolicy, rates: dict[str, RateQuote]
) -> Decimal:
    if currency == policy.currency:
        return Decimal("1")

    quote = rates.get(currency)
    if quote is None:
        raise InternalInvariantViolation(
            f"No resolved rate for {currency}; rates must be resolved for every "
            f"ledger currency before aggregation"
        )
    return quote.rate


def convert_expense(
    expense: Expense, rate: Decimal, precision: int, strict: bool = False
) -> ConvertedExpense:
    """
    Convert an expense and its shares, keeping the shares balanced.

    Steps:
    1. Convert and round the amount and each share independently
    2. Compute residual = converted amount - sum of converted shares
    3. Add the residual to the largest share (ties: first in list)

    The residual is only absorbed when the original shares summed to the
    original amount. Otherwise the expense is left as is (lenient) or
    rejected (strict).

    Args:
        expense: Expense in its own currency
        rate: Units of reporting currency per 1 unit of expense currency
        precision: Reporting currency decimal places
        strict: Raise instead of logging when shares don't match the amount

    Returns:
        Converted expense

    Raises:
        ValidationError: In strict mode, when shares don't sum to the amount
    """
    amount = round_money(expense.amount * rate, precision)
    shares = [
        (p.member_id, round_money(p.share_amount * rate, precision))
        for p in expense.participants
    ]

    mismatch = expense.amount - expense.share_total
    if abs(mismatch) > tolerance(currency_precision(expense.currency)):
        message = (
            f"Expense {expense.expense_id} shares total {expense.share_total} "
            f"{expense.currency} but the amount is {expense.amount} "
            f"{expense.currency}"
        )
        if strict:
            raise ValidationError(message, record_id=expense.expense_id)
        logger.warning(f"{message}; ledger will not balance")
    elif shares:
        residual = amount - sum((share for _, share in shares), Decimal("0"))
        if residual != 0:
            largest = max(range(len(shares)), key=lambda i: shares[i][1])
            member_id, share = shares[largest]
            shares[largest] = (member_id, share + residual)

            logger.info(
                f"Applied rounding adjustment: {residual} to member {member_id} "
                f"on expense {expense.expense_id}"
            )

    return ConvertedExpense(
        expense_id=expense.expense_id,
        payer_member_id=expense.payer_member_id,
        amount=amount,
        shares=tuple(shares),
        rate=rate,
    )


def convert_expenses(
    expenses: Iterable[Expense],
    policy: ExchangeRatePolicy,
    rates: dict[str, RateQuote],
    strict: bool = False,
) -> list[ConvertedExpense]:
    """Convert every expense into the reporting currency using resolved rates."""
    return [
        convert_expense(
            expense,
            _rate_for(expense.currency, policy, rates),
            policy.precision,
            strict=strict,
        )
        for expense in expenses
    ]


def _unknown_member(expense_id: str, member_id: str, role: str, strict: bool):
    message = f"Expense {expense_id} references unknown {role} {member_id}"
    if strict:
        raise ValidationError(message, record_id=expense_id)
    logger.warning(f"{message}; ignoring reference")


def fold_balances(
    members: list[Member],
    converted: Iterable[ConvertedExpense],
    precision: int,
    strict: bool = False,
) -> list[Balance]:
    """
    Fold converted expenses into one Balance per member.

    Every member gets a record, including members with no expenses. The
    output follows the order of ``members``.

    Args:
        members: Project roster
        converted: Expenses already converted to the reporting currency
        precision: Reporting currency decimal places
        strict: Raise on references to members not in the roster

    Returns:
        Fresh Balance records

    Raises:
        ValidationError: In strict mode, for unknown payer or participant
    """
    paid = {member.member_id: Decimal("0") for member in members}
    owed = {member.member_id: Decimal("0") for member in members}

    for expense in converted:
        if expense.payer_member_id in paid:
            paid[expense.payer_member_id] += expense.amount
        else:
            _unknown_member(
                expense.expense_id, expense.payer_member_id, "payer", strict
            )

        for member_id, share in expense.shares:
            if member_id in owed:
                owed[member_id] += share
            else:
                _unknown_member(expense.expense_id, member_id, "participant", strict)

    # Final pass so accumulated sums carry exactly ``precision`` places
    return [
        Balance(
            member=member,
            total_paid=round_money(paid[member.member_id], precision),
            total_share=round_money(owed[member.member_id], precision),
            balance=round_money(
                paid[member.member_id] - owed[member.member_id], precision
            ),
        )
        for member in members
    ]


def resolve_rates(
    expenses: Iterable[Expense],
    policy: ExchangeRatePolicy,
    resolver: ExchangeRateResolver,
) -> dict[str, RateQuote]:
    """Resolve every distinct foreign currency of the ledger once."""
    return resolver.resolve_all(
        collect_currencies(expenses),
        policy.currency,
        policy.custom_rates,
        policy.rate_date,
    )


def aggregate(
    members: list[Member],
    expenses: list[Expense],
    policy: ExchangeRatePolicy,
    resolver: ExchangeRateResolver | None = None,
    strict: bool = False,
) -> list[Balance]:
    """
    Compute per-member balances for a project ledger.

    Expenses must be active (soft-deleted ones filtered by the store).
    Distinct foreign currencies are resolved once through ``resolver``,
    custom policy rates first. Without a resolver, rates not covered by the
    policy come from the fallback tables; such expenses are still included.
    Expense order does not affect the result.

    Args:
        members: Project roster
        expenses: Active expenses
        policy: Reporting currency, custom rates and precision
        resolver: Exchange rate resolver (offline fallback when None)
        strict: Raise ValidationError on integrity problems instead of
            logging and ignoring them

    Returns:
        One Balance per member, in roster order
    """
    if resolver is None:
        resolver = ExchangeRateResolver()

    rates = resolve_rates(expenses, policy, resolver)
    converted = convert_expenses(expenses, policy, rates, strict=strict)
    return fold_balances(members, converted, policy.precision, strict=strict)
