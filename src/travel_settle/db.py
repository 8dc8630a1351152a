"""SQLite database operations for Travel Settle."""

import json
import sqlite3
import uuid
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

from .exceptions import ProjectNotFoundError
from .models import (
    ExchangeRatePolicy,
    Expense,
    Member,
    ParticipantShare,
    Project,
    RateTable,
    normalize_currency_code,
)


def new_id() -> str:
    """Generate a short random identifier for ledger records."""
    return uuid.uuid4().hex[:12]


class Database:
    """SQLite database manager.

    Serves as the ledger store (members, active expenses) and the project
    settings store (reporting currency, precision, custom rates). Amounts
    are stored as TEXT to keep Decimal values exact.
    """

    def __init__(self, db_path: Path):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                currency TEXT NOT NULL,
                precision INTEGER NOT NULL DEFAULT 2 CHECK (precision >= 0),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS custom_rates (
                project_id TEXT NOT NULL REFERENCES projects(id),
                currency TEXT NOT NULL,
                rate TEXT NOT NULL,
                PRIMARY KEY (project_id, currency)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS members (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL REFERENCES projects(id),
                display_name TEXT NOT NULL,
                user_id TEXT,
                avatar_url TEXT
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS expenses (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL REFERENCES projects(id),
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                payer_member_id TEXT NOT NULL,
                expense_date DATE NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                deleted_at TIMESTAMP
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS expense_participants (
                expense_id TEXT NOT NULL REFERENCES expenses(id),
                member_id TEXT NOT NULL,
                share_amount TEXT NOT NULL
            )
        """
        )

        # Last good live rate table per base, used as the preferred fallback
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS rate_snapshots (
                base TEXT PRIMARY KEY,
                rates TEXT NOT NULL,
                fetched_at TIMESTAMP NOT NULL
            )
        """
        )

        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    # ========================================================================
    # Project operations
    # ========================================================================

    def create_project(
        self,
        name: str,
        currency: str = "TWD",
        precision: int = 2,
        project_id: str | None = None,
    ) -> Project:
        """Create a project and return it."""
        project = Project(
            project_id=project_id or new_id(),
            name=name,
            currency=normalize_currency_code(currency),
            precision=precision,
        )
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO projects (id, name, currency, precision, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                project.project_id,
                project.name,
                project.currency,
                project.precision,
                project.created_at.isoformat(),
            ),
        )
        self.conn.commit()
        return project

    def get_project(self, project_id: str) -> Project | None:
        """Get a project by ID, including its custom rates."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT id, name, currency, precision, created_at
            FROM projects
            WHERE id = ?
            """,
            (project_id,),
        )
        row = cursor.fetchone()
        if not row:
            return None

        cursor.execute(
            "SELECT currency, rate FROM custom_rates WHERE project_id = ?",
            (project_id,),
        )
        custom_rates = {r["currency"]: Decimal(r["rate"]) for r in cursor.fetchall()}

        return Project(
            project_id=row["id"],
            name=row["name"],
            currency=row["currency"],
            precision=row["precision"],
            custom_rates=custom_rates,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_policy(self, project_id: str) -> ExchangeRatePolicy:
        """Get the exchange rate policy of a project."""
        project = self.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project.to_policy()

    def set_custom_rate(self, project_id: str, currency: str, rate: Decimal | None):
        """Set a custom rate for a currency, or clear it when rate is None."""
        if self.get_project(project_id) is None:
            raise ProjectNotFoundError(project_id)

        currency = normalize_currency_code(currency)
        cursor = self.conn.cursor()
        if rate is None:
            cursor.execute(
                "DELETE FROM custom_rates WHERE project_id = ? AND currency = ?",
                (project_id, currency),
            )
        else:
            if rate <= 0:
                raise ValueError(f"Custom rate for {currency} must be positive")
            cursor.execute(
                """
                INSERT INTO custom_rates (project_id, currency, rate)
                VALUES (?, ?, ?)
                ON CONFLICT(project_id, currency) DO UPDATE SET
                    rate = excluded.rate
                """,
                (project_id, currency, str(rate)),
            )
        self.conn.commit()

    # ========================================================================
    # Member operations
    # ========================================================================

    def add_member(
        self,
        project_id: str,
        display_name: str,
        user_id: str | None = None,
        avatar_url: str | None = None,
    ) -> Member:
        """Add a member (a placeholder when user_id is None) to a project."""
        if self.get_project(project_id) is None:
            raise ProjectNotFoundError(project_id)

        member = Member(
            member_id=new_id(),
            display_name=display_name,
            user_id=user_id,
            avatar_url=avatar_url,
        )
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO members (id, project_id, display_name, user_id, avatar_url)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                member.member_id,
                project_id,
                member.display_name,
                member.user_id,
                member.avatar_url,
            ),
        )
        self.conn.commit()
        return member

    def get_members(self, project_id: str) -> list[Member]:
        """Get all members of a project in the order they were added."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT id, display_name, user_id, avatar_url
            FROM members
            WHERE project_id = ?
            ORDER BY rowid
            """,
            (project_id,),
        )
        return [
            Member(
                member_id=row["id"],
                display_name=row["display_name"],
                user_id=row["user_id"],
                avatar_url=row["avatar_url"],
            )
            for row in cursor.fetchall()
        ]

    # ========================================================================
    # Expense operations
    # ========================================================================

    def add_expense(self, project_id: str, expense: Expense) -> Expense:
        """Save an expense with its participant shares."""
        if self.get_project(project_id) is None:
            raise ProjectNotFoundError(project_id)

        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO expenses (
                id, project_id, amount, currency, payer_member_id,
                expense_date, description
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                expense.expense_id,
                project_id,
                str(expense.amount),
                expense.currency,
                expense.payer_member_id,
                expense.expense_date.isoformat(),
                expense.description,
            ),
        )
        cursor.executemany(
            """
            INSERT INTO expense_participants (expense_id, member_id, share_amount)
            VALUES (?, ?, ?)
            """,
            [
                (expense.expense_id, p.member_id, str(p.share_amount))
                for p in expense.participants
            ],
        )
        self.conn.commit()
        return expense

    def get_expenses(self, project_id: str) -> list[Expense]:
        """Get the active (not soft-deleted) expenses of a project."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT p.expense_id, p.member_id, p.share_amount
            FROM expense_participants p
            JOIN expenses e ON e.id = p.expense_id
            WHERE e.project_id = ? AND e.deleted_at IS NULL
            ORDER BY p.rowid
            """,
            (project_id,),
        )
        participants: dict[str, list[ParticipantShare]] = {}
        for row in cursor.fetchall():
            participants.setdefault(row["expense_id"], []).append(
                ParticipantShare(
                    member_id=row["member_id"],
                    share_amount=Decimal(row["share_amount"]),
                )
            )

        cursor.execute(
            """
            SELECT id, amount, currency, payer_member_id, expense_date, description
            FROM expenses
            WHERE project_id = ? AND deleted_at IS NULL
            ORDER BY expense_date, rowid
            """,
            (project_id,),
        )
        return [
            Expense(
                expense_id=row["id"],
                amount=Decimal(row["amount"]),
                currency=row["currency"],
                payer_member_id=row["payer_member_id"],
                expense_date=date.fromisoformat(row["expense_date"]),
                description=row["description"],
                participants=participants.get(row["id"], []),
            )
            for row in cursor.fetchall()
        ]

    def delete_expense(self, project_id: str, expense_id: str) -> bool:
        """Soft-delete an expense. Returns False if no active expense matched."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE expenses SET deleted_at = ?
            WHERE id = ? AND project_id = ? AND deleted_at IS NULL
            """,
            (datetime.now().isoformat(), expense_id, project_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    # ========================================================================
    # Rate snapshot operations
    # ========================================================================

    def save_rate_snapshot(self, table: RateTable):
        """Store a live rate table as the fallback for its base."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO rate_snapshots (base, rates, fetched_at)
            VALUES (?, ?, ?)
            ON CONFLICT(base) DO UPDATE SET
                rates = excluded.rates,
                fetched_at = excluded.fetched_at
            """,
            (
                table.base,
                json.dumps({code: str(rate) for code, rate in table.rates.items()}),
                table.fetched_at.isoformat(),
            ),
        )
        self.conn.commit()

    def get_rate_snapshot(self, base: str) -> RateTable | None:
        """Get the last stored live rate table for a base."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT base, rates, fetched_at FROM rate_snapshots WHERE base = ?",
            (normalize_currency_code(base),),
        )
        row = cursor.fetchone()
        if not row:
            return None

        stored_rates = json.loads(row["rates"])
        return RateTable(
            base=row["base"],
            rates={code: Decimal(rate) for code, rate in stored_rates.items()},
            fetched_at=datetime.fromisoformat(row["fetched_at"]),
            source="snapshot",
        )
