"""Service layer that composes the ledger store, rate resolution and settlement.

This module provides the caller-facing API. The computation itself lives in
``compute_settlement_from_ledger``, a function of its inputs only, so it can
be reused without a database or network.
"""

import logging
from decimal import Decimal

from ..clients.exchange_rates import ExchangeRateClient
from ..config import Settings
from ..db import Database
from ..models import (
    ExchangeRatePolicy,
    Expense,
    Member,
    RateQuote,
    SettlementResult,
    SettlementSummary,
)
from .ledger import aggregate, resolve_rates
from .planner import SettlementStrategy, plan_settlements
from .rates import ExchangeRateResolver
from .rounding import is_effectively_zero, round_money

logger = logging.getLogger(__name__)


class SettlementService:
    """Service for computing who owes whom in a travel project.

    The rate client is opened on first use and kept until ``close()``, so
    repeated calls within the cache TTL reuse the fetched rate table.
    """

    def __init__(self, settings: Settings, database: Database):
        """Initialize the settlement service."""
        self.settings = settings
        self.db = database
        self._client: ExchangeRateClient | None = None

    def close(self):
        """Close the rate client if one was opened."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def _rate_client(self) -> ExchangeRateClient:
        if self._client is None:
            self._client = ExchangeRateClient(
                base_url=self.settings.exchange_rate_api_url,
                timeout=self.settings.exchange_rate_timeout,
                cache_ttl=self.settings.exchange_rate_cache_ttl,
            )
        return self._client

    def _resolver(self) -> ExchangeRateResolver:
        base = self.settings.exchange_rate_base
        return ExchangeRateResolver(
            source=self._rate_client(),
            base=base,
            snapshot=self.db.get_rate_snapshot(base),
        )

    def _save_snapshot(self, resolver: ExchangeRateResolver):
        """Persist the latest live table so later outages can fall back to it."""
        table = resolver.latest_table()
        if table is not None and not table.is_fallback:
            self.db.save_rate_snapshot(table)

    def compute_settlement(self, project_id: str) -> SettlementResult:
        """
        Compute balances and a settlement plan for a project.

        Rate source outages never fail the call: the result is computed with
        fallback rates and ``summary.using_fallback_rates`` is set.

        Args:
            project_id: The project to settle

        Returns:
            Balances, settlements and summary

        Raises:
            ProjectNotFoundError: If the project doesn't exist
            ValidationError: In strict mode, for ledger integrity problems
            InternalInvariantViolation: If settlement planning fails to converge
        """
        policy = self.db.get_policy(project_id)
        members = self.db.get_members(project_id)
        expenses = self.db.get_expenses(project_id)

        logger.info(
            f"Computing settlement for project {project_id}: "
            f"{len(members)} members, {len(expenses)} expenses"
        )

        resolver = self._resolver()
        result = compute_settlement_from_ledger(
            members=members,
            expenses=expenses,
            policy=policy,
            resolver=resolver,
            strict=self.settings.strict_validation,
        )

        self._save_snapshot(resolver)

        return result

    def convert(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
        precision: int | None = None,
    ) -> tuple[Decimal, RateQuote]:
        """
        Convert an amount between two currencies with live rates.

        Args:
            amount: Amount in ``from_currency``
            from_currency: Source currency
            to_currency: Target currency
            precision: Decimal places of the result (default from settings)

        Returns:
            Tuple of (converted amount, rate quote)
        """
        if precision is None:
            precision = self.settings.default_precision

        resolver = self._resolver()
        quote = resolver.resolve(from_currency, to_currency)

        self._save_snapshot(resolver)

        return round_money(amount * quote.rate, precision), quote


def compute_settlement_from_ledger(
    members: list[Member],
    expenses: list[Expense],
    policy: ExchangeRatePolicy,
    resolver: ExchangeRateResolver,
    strict: bool = False,
    strategy: SettlementStrategy | None = None,
) -> SettlementResult:
    """
    Compute balances, settlements and summary from ledger data.

    Steps:
    1. Aggregate expenses into per-member balances (rates resolved once)
    2. Plan settlements from the balances
    3. Check conservation (balances sum to zero, paid == shared)

    Totals are taken over roster members, so references ignored in lenient
    mode show up as an unbalanced ledger.

    Args:
        members: Project roster
        expenses: Active expenses
        policy: Reporting currency, custom rates and precision
        resolver: Exchange rate resolver (its source is hit at most once)
        strict: Raise ValidationError on integrity problems
        strategy: Settlement strategy (GreedyMaxMatch by default)

    Returns:
        Settlement result
    """
    precision = policy.precision

    balances = aggregate(members, expenses, policy, resolver, strict=strict)
    settlements = plan_settlements(balances, precision, strategy)

    # Memoized on the resolver: no second lookup
    rates = resolve_rates(expenses, policy, resolver)

    total_amount = round_money(
        sum((b.total_paid for b in balances), Decimal("0")), precision
    )
    total_shared = round_money(
        sum((b.total_share for b in balances), Decimal("0")), precision
    )

    is_balanced = is_effectively_zero(total_amount - total_shared, precision)
    if not is_balanced:
        logger.warning(
            f"Ledger is not balanced: paid {total_amount}, shared {total_shared} "
            f"{policy.currency}"
        )

    using_fallback = any(quote.is_fallback for quote in rates.values())

    summary = SettlementSummary(
        currency=policy.currency,
        precision=precision,
        total_expenses=len(expenses),
        total_amount=total_amount,
        total_shared=total_shared,
        is_balanced=is_balanced,
        using_fallback_rates=using_fallback,
        rates=list(rates.values()),
    )

    logger.info(
        f"Settlement computed: {len(settlements)} transfers, "
        f"total {total_amount} {policy.currency}"
        + (" (fallback rates)" if using_fallback else "")
    )

    return SettlementResult(
        balances=balances, settlements=settlements, summary=summary
    )
