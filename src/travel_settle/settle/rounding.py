"""Monetary rounding shared by conversion, aggregation and settlement."""

from decimal import ROUND_HALF_UP, Decimal

from ..exceptions import ValidationError
from ..models import ParticipantShare, normalize_currency_code

# Currencies with no minor unit in practice
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND"})


def currency_precision(currency: str) -> int:
    """Decimal places used for amounts entered in ``currency``."""
    return 0 if normalize_currency_code(currency) in ZERO_DECIMAL_CURRENCIES else 2


def _check_precision(precision: int) -> None:
    if precision < 0:
        raise ValidationError(f"Precision must be non-negative, got {precision}")


def minor_unit(precision: int) -> Decimal:
    """
    Smallest amount representable at the given precision.

    Args:
        precision: Number of decimal places

    Returns:
        10 ** -precision as Decimal (e.g. 0.01 for precision 2)
    """
    _check_precision(precision)
    return Decimal(1).scaleb(-precision)


def tolerance(precision: int) -> Decimal:
    """Epsilon under which an amount counts as zero: 0.01 of the minor unit."""
    return minor_unit(precision) / 100


def round_money(value: Decimal | int | str | float, precision: int) -> Decimal:
    """
    Round a monetary amount to ``precision`` decimal places.
    Uses ROUND_HALF_UP (ties away from zero) for consistency.

    Args:
        value: Amount to round; floats go through str() to avoid binary noise
        precision: Number of decimal places (must be >= 0)

    Returns:
        Rounded amount as Decimal

    Raises:
        ValidationError: If precision is negative
    """
    if isinstance(value, float):
        value = Decimal(str(value))
    return Decimal(value).quantize(minor_unit(precision), rounding=ROUND_HALF_UP)


def is_effectively_zero(value: Decimal, precision: int) -> bool:
    """True when ``value`` is within the zero tolerance for ``precision``."""
    return abs(value) <= tolerance(precision)


def split_equally(
    amount: Decimal, member_ids: list[str], precision: int
) -> list[ParticipantShare]:
    """
    Split an amount equally so the shares sum exactly to the amount.

    The amount is converted to whole minor units and divided; leftover units
    go one each to the first members in the given order.

    Args:
        amount: Total to split
        member_ids: Members sharing the amount, in display order
        precision: Number of decimal places of the currency

    Returns:
        One participant share per member

    Raises:
        ValidationError: If no members are given
    """
    if not member_ids:
        raise ValidationError("Cannot split an amount between zero members")

    unit = minor_unit(precision)
    total_units = int(round_money(amount, precision) / unit)
    base, remainder = divmod(total_units, len(member_ids))

    return [
        ParticipantShare(
            member_id=member_id,
            share_amount=(base + (1 if i < remainder else 0)) * unit,
        )
        for i, member_id in enumerate(member_ids)
    ]
