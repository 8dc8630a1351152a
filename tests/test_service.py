"""Tests for SettlementService layer."""

import json
from datetime import date, datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import httpx
import pytest

from travel_settle.clients.exchange_rates import ExchangeRateClient
from travel_settle.config import Settings
from travel_settle.db import Database, new_id
from travel_settle.exceptions import (
    ExchangeRateAPIError,
    ProjectNotFoundError,
    ValidationError,
)
from travel_settle.models import (
    ExchangeRatePolicy,
    Expense,
    Member,
    ParticipantShare,
    RateTable,
)
from travel_settle.settle.planner import apply_settlements
from travel_settle.settle.rates import ExchangeRateResolver
from travel_settle.settle.service import (
    SettlementService,
    compute_settlement_from_ledger,
)


def make_table(source: str = "live") -> RateTable:
    """USD-based table where 1 JPY = 0.2 TWD and 1 EUR = 40 TWD."""
    return RateTable(
        base="USD",
        rates={
            "USD": Decimal("1"),
            "TWD": Decimal("32"),
            "JPY": Decimal("160"),
            "EUR": Decimal("0.8"),
        },
        fetched_at=datetime(2025, 1, 15, 9, 0, 0),
        source=source,
    )


def make_expense(
    amount: str,
    payer: str,
    shares: dict[str, str],
    currency: str = "TWD",
    expense_date: date = date(2025, 1, 15),
) -> Expense:
    """Create an Expense for testing."""
    return Expense(
        expense_id=new_id(),
        amount=Decimal(amount),
        currency=currency,
        payer_member_id=payer,
        expense_date=expense_date,
        description="Test expense",
        participants=[
            ParticipantShare(member_id=m, share_amount=Decimal(s))
            for m, s in shares.items()
        ],
    )


def mock_rate_client(mock_client_class, table=None, error=None):
    """Wire a patched ExchangeRateClient class to a MagicMock instance."""
    mock_client = MagicMock()
    mock_client.__enter__.return_value = mock_client
    if error is not None:
        mock_client.get_latest_rates.side_effect = error
    else:
        mock_client.get_latest_rates.return_value = table or make_table()
    mock_client_class.return_value = mock_client
    return mock_client


@pytest.fixture
def mock_settings(tmp_path):
    """Create test settings."""
    return Settings(
        database_path=tmp_path / "test.db",
        exchange_rate_api_url="https://rates.test",
    )


@pytest.fixture
def mock_db(tmp_path):
    """Create a temporary database."""
    db = Database(tmp_path / "test.db")
    yield db
    db.close()


@pytest.fixture
def service(mock_settings, mock_db):
    """Create a SettlementService instance."""
    return SettlementService(mock_settings, mock_db)


@pytest.fixture
def project(mock_db):
    """A TWD project with three members: Alice, Bob and an unclaimed slot."""
    project = mock_db.create_project("Tokyo 2025", currency="TWD")
    alice = mock_db.add_member(project.project_id, "Alice", user_id="u-alice")
    bob = mock_db.add_member(project.project_id, "Bob", user_id="u-bob")
    carol = mock_db.add_member(project.project_id, "Carol")
    return project, alice, bob, carol


class TestComputeSettlementFromLedger:
    """Tests for the pure settlement computation."""

    @pytest.fixture
    def members(self):
        return [
            Member(member_id="m1", display_name="M1", user_id="u1"),
            Member(member_id="m2", display_name="M2", user_id="u2"),
        ]

    @pytest.fixture
    def source(self):
        mock = MagicMock()
        mock.get_latest_rates.return_value = make_table()
        return mock

    def test_single_currency_ledger(self, members, source):
        """Same-currency ledger never touches the rate source."""
        expenses = [
            make_expense("1000", "m1", {"m1": "500", "m2": "500"}),
            make_expense("600", "m2", {"m1": "300", "m2": "300"}),
        ]

        result = compute_settlement_from_ledger(
            members,
            expenses,
            ExchangeRatePolicy(currency="TWD"),
            ExchangeRateResolver(source=source),
        )

        assert [b.balance for b in result.balances] == [
            Decimal("200"),
            Decimal("-200"),
        ]
        assert len(result.settlements) == 1
        assert result.settlements[0].from_member.member_id == "m2"
        assert result.settlements[0].amount == Decimal("200")
        assert result.summary.total_expenses == 2
        assert result.summary.total_amount == Decimal("1600")
        assert result.summary.is_balanced is True
        assert result.summary.using_fallback_rates is False
        assert result.summary.rates == []
        source.get_latest_rates.assert_not_called()

    def test_mixed_currencies_use_one_lookup(self, members, source):
        expenses = [
            make_expense("1000", "m1", {"m1": "500", "m2": "500"}, currency="JPY"),
            make_expense("10", "m2", {"m1": "5", "m2": "5"}, currency="EUR"),
            make_expense("100", "m1", {"m1": "50", "m2": "50"}, currency="JPY"),
        ]

        result = compute_settlement_from_ledger(
            members,
            expenses,
            ExchangeRatePolicy(currency="TWD"),
            ExchangeRateResolver(source=source),
        )

        # JPY: 1100 * 0.2 = 220 paid by m1; EUR: 10 * 40 = 400 paid by m2
        assert result.summary.total_amount == Decimal("620")
        assert result.balances[0].balance == Decimal("-90")
        assert result.balances[1].balance == Decimal("90")
        assert sorted(q.currency for q in result.summary.rates) == ["EUR", "JPY"]
        assert sorted(result.summary.live_currencies) == ["EUR", "JPY"]
        source.get_latest_rates.assert_called_once()

    def test_custom_rates_reported(self, members, source):
        policy = ExchangeRatePolicy(
            currency="TWD", custom_rates={"JPY": Decimal("0.21")}
        )
        expenses = [
            make_expense("150", "m1", {"m1": "75", "m2": "75"}, currency="JPY")
        ]

        result = compute_settlement_from_ledger(
            members, expenses, policy, ExchangeRateResolver(source=source)
        )

        assert result.summary.total_amount == Decimal("31.50")
        assert result.summary.custom_currencies == ["JPY"]
        assert result.summary.live_currencies == []
        assert result.settlements[0].amount == Decimal("15.75")

    def test_rate_outage_still_returns_result(self, members, source):
        source.get_latest_rates.side_effect = ExchangeRateAPIError("Network error")
        expenses = [
            make_expense("1000", "m1", {"m1": "500", "m2": "500"}, currency="JPY")
        ]

        result = compute_settlement_from_ledger(
            members,
            expenses,
            ExchangeRatePolicy(currency="TWD"),
            ExchangeRateResolver(source=source),
        )

        assert result.summary.using_fallback_rates is True
        assert result.summary.is_balanced is True
        assert len(result.settlements) == 1

    def test_unbalanced_ledger_flagged(self, members, source):
        expenses = [make_expense("100", "m1", {"m1": "40", "m2": "40"})]

        result = compute_settlement_from_ledger(
            members,
            expenses,
            ExchangeRatePolicy(currency="TWD"),
            ExchangeRateResolver(source=source),
        )

        assert result.summary.is_balanced is False
        assert result.summary.total_amount == Decimal("100")
        assert result.summary.total_shared == Decimal("80")

    def test_strict_mode_raises(self, members, source):
        expenses = [make_expense("100", "m1", {"m1": "50", "ghost": "50"})]

        with pytest.raises(ValidationError):
            compute_settlement_from_ledger(
                members,
                expenses,
                ExchangeRatePolicy(currency="TWD"),
                ExchangeRateResolver(source=source),
                strict=True,
            )

    def test_settlements_clear_every_balance(self, source):
        members = [
            Member(member_id=f"m{i}", display_name=f"M{i}") for i in range(4)
        ]
        expenses = [
            make_expense(
                "1234.56",
                "m0",
                {"m0": "308.64", "m1": "308.64", "m2": "308.64", "m3": "308.64"},
                currency="JPY",
            ),
            make_expense("77.7", "m2", {"m1": "38.85", "m3": "38.85"}, "EUR"),
            make_expense("999", "m3", {"m0": "333", "m1": "333", "m2": "333"}),
        ]

        result = compute_settlement_from_ledger(
            members,
            expenses,
            ExchangeRatePolicy(currency="TWD"),
            ExchangeRateResolver(source=source),
        )

        remaining = apply_settlements(result.balances, result.settlements)
        assert all(v == 0 for v in remaining.values())
        assert len(result.settlements) <= 3
        assert result.summary.is_balanced is True

    def test_json_uses_from_and_to(self, members, source):
        expenses = [make_expense("1000", "m1", {"m1": "500", "m2": "500"})]

        result = compute_settlement_from_ledger(
            members,
            expenses,
            ExchangeRatePolicy(currency="TWD"),
            ExchangeRateResolver(source=source),
        )
        payload = json.loads(result.model_dump_json(by_alias=True))

        settlement = payload["settlements"][0]
        assert settlement["from"]["member_id"] == "m2"
        assert settlement["to"]["member_id"] == "m1"
        assert Decimal(settlement["amount"]) == Decimal("500")


class TestComputeSettlement:
    """Tests for SettlementService.compute_settlement."""

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_computes_from_stored_ledger(
        self, mock_client_class, service, mock_db, project
    ):
        """Balances come back in roster order, placeholders included."""
        mock_rate_client(mock_client_class)
        proj, alice, bob, carol = project
        mock_db.add_expense(
            proj.project_id,
            make_expense(
                "300",
                alice.member_id,
                {
                    alice.member_id: "100",
                    bob.member_id: "100",
                    carol.member_id: "100",
                },
            ),
        )

        result = service.compute_settlement(proj.project_id)

        assert [b.member.display_name for b in result.balances] == [
            "Alice",
            "Bob",
            "Carol",
        ]
        assert [b.balance for b in result.balances] == [
            Decimal("200"),
            Decimal("-100"),
            Decimal("-100"),
        ]
        assert result.balances[2].member.is_placeholder is True
        assert [s.amount for s in result.settlements] == [
            Decimal("100"),
            Decimal("100"),
        ]

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_soft_deleted_expenses_excluded(
        self, mock_client_class, service, mock_db, project
    ):
        mock_rate_client(mock_client_class)
        proj, alice, bob, _ = project
        kept = make_expense("100", alice.member_id, {bob.member_id: "100"})
        dropped = make_expense("500", bob.member_id, {alice.member_id: "500"})
        mock_db.add_expense(proj.project_id, kept)
        mock_db.add_expense(proj.project_id, dropped)
        mock_db.delete_expense(proj.project_id, dropped.expense_id)

        result = service.compute_settlement(proj.project_id)

        assert result.summary.total_expenses == 1
        assert result.balances[0].balance == Decimal("100")

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_uses_project_custom_rates(
        self, mock_client_class, service, mock_db, project
    ):
        mock_client = mock_rate_client(mock_client_class)
        proj, alice, bob, _ = project
        mock_db.set_custom_rate(proj.project_id, "JPY", Decimal("0.21"))
        mock_db.add_expense(
            proj.project_id,
            make_expense(
                "150",
                alice.member_id,
                {alice.member_id: "75", bob.member_id: "75"},
                currency="JPY",
            ),
        )

        result = service.compute_settlement(proj.project_id)

        assert result.summary.total_amount == Decimal("31.50")
        assert result.summary.custom_currencies == ["JPY"]
        mock_client.get_latest_rates.assert_not_called()

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_saves_live_table_as_snapshot(
        self, mock_client_class, service, mock_db, project
    ):
        mock_rate_client(mock_client_class)
        proj, alice, bob, _ = project
        mock_db.add_expense(
            proj.project_id,
            make_expense("1000", alice.member_id, {bob.member_id: "1000"}, "JPY"),
        )

        service.compute_settlement(proj.project_id)

        snapshot = mock_db.get_rate_snapshot("USD")
        assert snapshot is not None
        assert snapshot.rates["JPY"] == Decimal("160")
        assert snapshot.source == "snapshot"

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_outage_falls_back_to_snapshot(
        self, mock_client_class, service, mock_db, project
    ):
        mock_rate_client(mock_client_class, error=ExchangeRateAPIError("down"))
        mock_db.save_rate_snapshot(make_table())
        proj, alice, bob, _ = project
        mock_db.add_expense(
            proj.project_id,
            make_expense("1000", alice.member_id, {bob.member_id: "1000"}, "JPY"),
        )

        result = service.compute_settlement(proj.project_id)

        assert result.summary.using_fallback_rates is True
        # Snapshot rate 160 JPY/USD, 32 TWD/USD -> 0.2
        assert result.summary.total_amount == Decimal("200.00")

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_outage_does_not_overwrite_snapshot(
        self, mock_client_class, service, mock_db, project
    ):
        mock_rate_client(mock_client_class, error=ExchangeRateAPIError("down"))
        proj, alice, bob, _ = project
        mock_db.add_expense(
            proj.project_id,
            make_expense("1000", alice.member_id, {bob.member_id: "1000"}, "JPY"),
        )

        service.compute_settlement(proj.project_id)

        assert mock_db.get_rate_snapshot("USD") is None

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_unknown_project(self, mock_client_class, service):
        mock_rate_client(mock_client_class)

        with pytest.raises(ProjectNotFoundError):
            service.compute_settlement("missing")

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_empty_project(self, mock_client_class, service, project):
        mock_rate_client(mock_client_class)
        proj = project[0]

        result = service.compute_settlement(proj.project_id)

        assert result.settlements == []
        assert all(b.balance == 0 for b in result.balances)
        assert result.summary.total_expenses == 0
        assert result.summary.is_balanced is True

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_strict_setting_passed_through(
        self, mock_client_class, tmp_path, mock_db, project
    ):
        mock_rate_client(mock_client_class)
        settings = Settings(database_path=tmp_path / "test.db", strict_validation=True)
        strict_service = SettlementService(settings, mock_db)
        proj, alice, _, _ = project
        mock_db.add_expense(
            proj.project_id,
            make_expense("100", alice.member_id, {"nobody": "100"}),
        )

        with pytest.raises(ValidationError, match="nobody"):
            strict_service.compute_settlement(proj.project_id)


class TestConvert:
    """Tests for SettlementService.convert."""

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_converts_with_live_rate(self, mock_client_class, service):
        mock_rate_client(mock_client_class)

        amount, quote = service.convert(Decimal("150"), "JPY", "TWD")

        assert amount == Decimal("30.00")
        assert quote.rate == Decimal("0.2")
        assert quote.is_fallback is False

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_precision_override(self, mock_client_class, service):
        mock_rate_client(mock_client_class)

        amount, _ = service.convert(Decimal("1"), "TWD", "JPY", precision=0)

        assert amount == Decimal("5")

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_fallback_flagged(self, mock_client_class, service):
        mock_rate_client(mock_client_class, error=ExchangeRateAPIError("down"))

        _, quote = service.convert(Decimal("10"), "USD", "TWD")

        assert quote.is_fallback is True


class TestRateClientLifetime:
    """The service keeps one rate client until it is closed."""

    @pytest.fixture
    def jpy_project(self, mock_db, project):
        proj, alice, bob, _ = project
        mock_db.add_expense(
            proj.project_id,
            make_expense("1000", alice.member_id, {bob.member_id: "1000"}, "JPY"),
        )
        return proj

    def test_repeat_calls_within_ttl_make_one_request(
        self, mock_settings, mock_db, jpy_project
    ):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={"success": True, "base": "USD", "rates": {"TWD": 32, "JPY": 160}},
            )

        def client_factory(**kwargs):
            return ExchangeRateClient(transport=httpx.MockTransport(handler), **kwargs)

        with patch(
            "travel_settle.settle.service.ExchangeRateClient",
            side_effect=client_factory,
        ):
            with SettlementService(mock_settings, mock_db) as service:
                first = service.compute_settlement(jpy_project.project_id)
                second = service.compute_settlement(jpy_project.project_id)
                service.convert(Decimal("160"), "JPY", "TWD")

        assert len(requests) == 1
        assert first.summary.total_amount == Decimal("200.00")
        assert second == first

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_client_created_once_and_closed(
        self, mock_client_class, service, jpy_project
    ):
        mock_client = mock_rate_client(mock_client_class)

        service.compute_settlement(jpy_project.project_id)
        service.convert(Decimal("1"), "USD", "TWD")
        service.close()

        mock_client_class.assert_called_once()
        mock_client.close.assert_called_once()

    @patch("travel_settle.settle.service.ExchangeRateClient")
    def test_close_without_client_is_noop(self, mock_client_class, service):
        service.close()

        mock_client_class.assert_not_called()
