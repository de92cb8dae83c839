from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from finledger.errors import StoreUnavailable

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("balance", Numeric(20, 8), nullable=False, default=0),
    Column("currency", String(16), nullable=False),
    Column("symbol", String(50)),
    Column("asset_type", String(20)),
    Column("exclude_from_net_worth", Boolean, nullable=False, default=False),
    Column("exclude_from_cash_balance", Boolean, nullable=False, default=False),
    Column("updated_at", DateTime),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False, index=True),
    Column("category_id", String(36)),
    Column("amount", Numeric(20, 8), nullable=False),
    Column("description", String(500)),
    Column("date", Date, nullable=False, index=True),
    Column("linked_transaction_id", String(36)),
    Column("exclude_from_estimate", Boolean, nullable=False, default=False),
    Column("is_recurring", Boolean, nullable=False, default=False),
)

investment_transactions = Table(
    "investment_transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False, index=True),
    Column("type", String(10), nullable=False),
    Column("quantity", Numeric(20, 8), nullable=False),
    Column("price", Numeric(20, 8), nullable=False),
    Column("total_amount", Numeric(24, 8), nullable=False),
    Column("date", Date, nullable=False),
    Column("notes", String(500)),
    Column("created_at", DateTime),
)

recurring_schedules = Table(
    "recurring_schedules",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("type", String(20), nullable=False),
    Column("frequency", String(20), nullable=False),
    Column("day_of_week", Integer),
    Column("day_of_month", Integer),
    Column("account_id", String(36), nullable=False),
    Column("to_account_id", String(36)),
    Column("category_id", String(36)),
    Column("amount", Numeric(20, 8), nullable=False),
    Column("amount_to", Numeric(20, 8)),
    Column("description", String(500)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime),
    Column("last_processed_date", Date),
    Column("remaining_occurrences", Integer),
    Column("end_date", Date),
)


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    if database_url in {"sqlite://", "sqlite:///:memory:"}:
        # every thread must see the same in-memory database
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(database_url, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


@contextmanager
def transaction_scope(engine: Engine) -> Iterator[Connection]:
    """Open one datastore transaction; commit on success, roll back on error."""
    try:
        with engine.begin() as conn:
            yield conn
    except OperationalError as exc:
        raise StoreUnavailable("Datastore unavailable.") from exc
