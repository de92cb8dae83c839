"""Connection-bound stores for the four persisted collections.

Each store wraps a single SQLAlchemy ``Connection`` opened by the caller with
``transaction_scope``; stores never commit on their own, so every statement a
ledger operation issues lands in the same datastore transaction.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.engine import Connection

from finledger.db import accounts, investment_transactions, recurring_schedules, transactions
from finledger.dates import month_bounds
from finledger.errors import NotFound
from finledger.models import (
    Account,
    InvestmentTransaction,
    RecurringSchedule,
    Transaction,
)

SORTABLE_TRANSACTION_FIELDS = {"date", "amount", "description"}

ACCOUNT_UPDATABLE = {
    "name": "name",
    "kind": "type",
    "balance": "balance",
    "currency": "currency",
    "symbol": "symbol",
    "asset_type": "asset_type",
    "exclude_from_net_worth": "exclude_from_net_worth",
    "exclude_from_cash_balance": "exclude_from_cash_balance",
}
TRANSACTION_UPDATABLE = {
    "account_id",
    "category_id",
    "amount",
    "description",
    "date",
    "exclude_from_estimate",
    "is_recurring",
}
SCHEDULE_UPDATABLE = {
    "frequency": "frequency",
    "day_of_week": "day_of_week",
    "day_of_month": "day_of_month",
    "account_id": "account_id",
    "to_account_id": "to_account_id",
    "category_id": "category_id",
    "amount": "amount",
    "amount_to": "amount_to",
    "description": "description",
    "is_active": "is_active",
    "last_processed_date": "last_processed_date",
    "remaining_occurrences": "remaining_occurrences",
    "end_date": "end_date",
}


def _column_values(changes: Mapping[str, Any], allowed: Mapping[str, str]) -> dict[str, Any]:
    unknown = set(changes) - set(allowed)
    if unknown:
        raise ValueError(f"Unsupported fields: {', '.join(sorted(unknown))}")
    return {allowed[field]: value for field, value in changes.items()}


class AccountStore:
    def __init__(self, conn: Connection):
        self._conn = conn

    def get(self, account_id: str) -> Account:
        row = self._conn.execute(
            select(accounts).where(accounts.c.id == account_id)
        ).mappings().first()
        if not row:
            raise NotFound("Account not found.")
        return _to_account(row)

    def find(self, account_id: str) -> Optional[Account]:
        try:
            return self.get(account_id)
        except NotFound:
            return None

    def list(self) -> list[Account]:
        rows = self._conn.execute(select(accounts).order_by(accounts.c.name.asc())).mappings().all()
        return [_to_account(row) for row in rows]

    def create(self, account: Account) -> Account:
        self._conn.execute(
            insert(accounts).values(
                id=account.id,
                name=account.name,
                type=account.kind,
                balance=account.balance,
                currency=account.currency,
                symbol=account.symbol,
                asset_type=account.asset_type,
                exclude_from_net_worth=account.exclude_from_net_worth,
                exclude_from_cash_balance=account.exclude_from_cash_balance,
                updated_at=account.updated_at,
            )
        )
        return account

    def update_balance(self, account_id: str, balance: Decimal, timestamp: datetime) -> None:
        self._require_rows(
            update(accounts)
            .where(accounts.c.id == account_id)
            .values(balance=balance, updated_at=timestamp)
        )

    def adjust_balance(self, account_id: str, delta: Decimal, timestamp: datetime) -> None:
        """Apply ``delta`` to the stored balance in a single statement."""
        self._require_rows(
            update(accounts)
            .where(accounts.c.id == account_id)
            .values(balance=accounts.c.balance + delta, updated_at=timestamp)
        )

    def update(self, account_id: str, changes: Mapping[str, Any], timestamp: datetime) -> Account:
        values = _column_values(changes, ACCOUNT_UPDATABLE)
        values["updated_at"] = timestamp
        self._require_rows(update(accounts).where(accounts.c.id == account_id).values(**values))
        return self.get(account_id)

    def delete(self, account_id: str) -> None:
        self._require_rows(accounts.delete().where(accounts.c.id == account_id))

    def _require_rows(self, stmt) -> None:
        result = self._conn.execute(stmt)
        if result.rowcount == 0:
            raise NotFound("Account not found.")


class MovementStore:
    def __init__(self, conn: Connection):
        self._conn = conn

    # transactions

    def get_transaction(self, transaction_id: str) -> Transaction:
        row = self._conn.execute(
            select(transactions).where(transactions.c.id == transaction_id)
        ).mappings().first()
        if not row:
            raise NotFound("Transaction not found.")
        return _to_transaction(row)

    def find_transaction(self, transaction_id: str) -> Optional[Transaction]:
        try:
            return self.get_transaction(transaction_id)
        except NotFound:
            return None

    def list_transactions(self, account_id: Optional[str] = None) -> list[Transaction]:
        stmt = select(transactions).order_by(transactions.c.date.desc(), transactions.c.id)
        if account_id is not None:
            stmt = stmt.where(transactions.c.account_id == account_id)
        return [_to_transaction(row) for row in self._conn.execute(stmt).mappings().all()]

    def create_transaction(self, txn: Transaction) -> Transaction:
        self._conn.execute(
            insert(transactions).values(
                id=txn.id,
                account_id=txn.account_id,
                category_id=txn.category_id,
                amount=txn.amount,
                description=txn.description,
                date=txn.date,
                linked_transaction_id=txn.linked_transaction_id,
                exclude_from_estimate=txn.exclude_from_estimate,
                is_recurring=txn.is_recurring,
            )
        )
        return txn

    def update_transaction(self, transaction_id: str, changes: Mapping[str, Any]) -> Transaction:
        values = _column_values(changes, {field: field for field in TRANSACTION_UPDATABLE})
        if values:
            result = self._conn.execute(
                update(transactions).where(transactions.c.id == transaction_id).values(**values)
            )
            if result.rowcount == 0:
                raise NotFound("Transaction not found.")
        return self.get_transaction(transaction_id)

    def delete_transaction(self, transaction_id: str) -> None:
        self._conn.execute(transactions.delete().where(transactions.c.id == transaction_id))

    def delete_by_account(self, account_id: str) -> None:
        self._conn.execute(transactions.delete().where(transactions.c.account_id == account_id))
        self._conn.execute(
            investment_transactions.delete().where(investment_transactions.c.account_id == account_id)
        )

    def find_by_account_and_date_pattern(
        self,
        account_id: str,
        amount: Decimal,
        description: Optional[str],
        month: date,
    ) -> Optional[Transaction]:
        """Find a transaction matching account, amount and description within ``month``."""
        first_day, last_day = month_bounds(month)
        if description:
            description_match = transactions.c.description == description
        else:
            description_match = or_(
                transactions.c.description.is_(None), transactions.c.description == ""
            )
        row = self._conn.execute(
            select(transactions)
            .where(
                transactions.c.account_id == account_id,
                transactions.c.amount == amount,
                description_match,
                transactions.c.date >= first_day,
                transactions.c.date <= last_day,
            )
            .limit(1)
        ).mappings().first()
        return _to_transaction(row) if row else None

    def find_by_date_range(
        self,
        start_date: date,
        end_date: date,
        account_id: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> list[Transaction]:
        conditions = [transactions.c.date >= start_date, transactions.c.date <= end_date]
        return self._find_where(conditions, account_id, category_id)

    def find_from_date(
        self,
        start_date: date,
        account_id: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> list[Transaction]:
        return self._find_where([transactions.c.date >= start_date], account_id, category_id)

    def find_linking_to(self, movement_ids: list[str], exclude_account_id: str) -> list[Transaction]:
        """Transactions on other accounts whose ``linked_transaction_id`` is in ``movement_ids``."""
        if not movement_ids:
            return []
        rows = self._conn.execute(
            select(transactions).where(
                transactions.c.linked_transaction_id.in_(movement_ids),
                transactions.c.account_id != exclude_account_id,
            )
        ).mappings().all()
        return [_to_transaction(row) for row in rows]

    def find_recurring(self) -> list[Transaction]:
        rows = self._conn.execute(
            select(transactions).where(transactions.c.is_recurring.is_(True))
        ).mappings().all()
        return [_to_transaction(row) for row in rows]

    def find_paginated(
        self,
        offset: int,
        limit: int,
        sort_by: str = "date",
        sort_order: str = "desc",
    ) -> list[Transaction]:
        field = sort_by if sort_by in SORTABLE_TRANSACTION_FIELDS else "date"
        column = transactions.c[field]
        ordering = column.asc() if sort_order.lower() == "asc" else column.desc()
        rows = self._conn.execute(
            select(transactions).order_by(ordering, transactions.c.id).limit(limit).offset(offset)
        ).mappings().all()
        return [_to_transaction(row) for row in rows]

    def count_transactions(self) -> int:
        return self._conn.execute(select(func.count()).select_from(transactions)).scalar_one()

    def _find_where(self, conditions, account_id, category_id) -> list[Transaction]:
        if account_id:
            conditions.append(transactions.c.account_id == account_id)
        if category_id:
            conditions.append(transactions.c.category_id == category_id)
        rows = self._conn.execute(
            select(transactions).where(and_(*conditions)).order_by(transactions.c.date.desc())
        ).mappings().all()
        return [_to_transaction(row) for row in rows]

    # investment trades

    def get_investment_transaction(self, trade_id: str) -> InvestmentTransaction:
        row = self._conn.execute(
            select(investment_transactions).where(investment_transactions.c.id == trade_id)
        ).mappings().first()
        if not row:
            raise NotFound("Investment transaction not found.")
        return _to_investment_transaction(row)

    def find_investment_transaction(self, trade_id: str) -> Optional[InvestmentTransaction]:
        try:
            return self.get_investment_transaction(trade_id)
        except NotFound:
            return None

    def list_investment_transactions(
        self, account_id: Optional[str] = None
    ) -> list[InvestmentTransaction]:
        stmt = select(investment_transactions).order_by(investment_transactions.c.date.desc())
        if account_id is not None:
            stmt = stmt.where(investment_transactions.c.account_id == account_id)
        return [_to_investment_transaction(row) for row in self._conn.execute(stmt).mappings().all()]

    def create_investment_transaction(self, trade: InvestmentTransaction) -> InvestmentTransaction:
        self._conn.execute(
            insert(investment_transactions).values(
                id=trade.id,
                account_id=trade.account_id,
                type=trade.type,
                quantity=trade.quantity,
                price=trade.price,
                total_amount=trade.total_amount,
                date=trade.date,
                notes=trade.notes,
                created_at=trade.created_at,
            )
        )
        return trade

    def delete_investment_transaction(self, trade_id: str) -> None:
        self._conn.execute(
            investment_transactions.delete().where(investment_transactions.c.id == trade_id)
        )


class ScheduleStore:
    def __init__(self, conn: Connection):
        self._conn = conn

    def get(self, schedule_id: str) -> RecurringSchedule:
        row = self._conn.execute(
            select(recurring_schedules).where(recurring_schedules.c.id == schedule_id)
        ).mappings().first()
        if not row:
            raise NotFound("Recurring schedule not found.")
        return _to_schedule(row)

    def list(self) -> list[RecurringSchedule]:
        rows = self._conn.execute(
            select(recurring_schedules).order_by(recurring_schedules.c.created_at.desc())
        ).mappings().all()
        return [_to_schedule(row) for row in rows]

    def find_active(self) -> list[RecurringSchedule]:
        rows = self._conn.execute(
            select(recurring_schedules)
            .where(recurring_schedules.c.is_active.is_(True))
            .order_by(recurring_schedules.c.created_at.asc(), recurring_schedules.c.id)
        ).mappings().all()
        return [_to_schedule(row) for row in rows]

    def create(self, schedule: RecurringSchedule) -> RecurringSchedule:
        self._conn.execute(
            insert(recurring_schedules).values(
                id=schedule.id,
                type=schedule.kind,
                frequency=schedule.frequency,
                day_of_week=schedule.day_of_week,
                day_of_month=schedule.day_of_month,
                account_id=schedule.account_id,
                to_account_id=schedule.to_account_id,
                category_id=schedule.category_id,
                amount=schedule.amount,
                amount_to=schedule.amount_to,
                description=schedule.description,
                is_active=schedule.is_active,
                created_at=schedule.created_at,
                last_processed_date=schedule.last_processed_date,
                remaining_occurrences=schedule.remaining_occurrences,
                end_date=schedule.end_date,
            )
        )
        return schedule

    def update(self, schedule_id: str, changes: Mapping[str, Any]) -> RecurringSchedule:
        values = _column_values(changes, SCHEDULE_UPDATABLE)
        if values:
            result = self._conn.execute(
                update(recurring_schedules)
                .where(recurring_schedules.c.id == schedule_id)
                .values(**values)
            )
            if result.rowcount == 0:
                raise NotFound("Recurring schedule not found.")
        return self.get(schedule_id)

    def delete(self, schedule_id: str) -> None:
        result = self._conn.execute(
            recurring_schedules.delete().where(recurring_schedules.c.id == schedule_id)
        )
        if result.rowcount == 0:
            raise NotFound("Recurring schedule not found.")


def _to_account(row: Mapping[str, Any]) -> Account:
    return Account(
        id=row["id"],
        name=row["name"],
        kind=row["type"],
        balance=row["balance"],
        currency=row["currency"],
        symbol=row["symbol"],
        asset_type=row["asset_type"],
        exclude_from_net_worth=bool(row["exclude_from_net_worth"]),
        exclude_from_cash_balance=bool(row["exclude_from_cash_balance"]),
        updated_at=row["updated_at"],
    )


def _to_transaction(row: Mapping[str, Any]) -> Transaction:
    return Transaction(
        id=row["id"],
        account_id=row["account_id"],
        amount=row["amount"],
        date=row["date"],
        category_id=row["category_id"],
        description=row["description"],
        linked_transaction_id=row["linked_transaction_id"],
        exclude_from_estimate=bool(row["exclude_from_estimate"]),
        is_recurring=bool(row["is_recurring"]),
    )


def _to_investment_transaction(row: Mapping[str, Any]) -> InvestmentTransaction:
    return InvestmentTransaction(
        id=row["id"],
        account_id=row["account_id"],
        type=row["type"],
        quantity=row["quantity"],
        price=row["price"],
        total_amount=row["total_amount"],
        date=row["date"],
        notes=row["notes"],
        created_at=row["created_at"],
    )


def _to_schedule(row: Mapping[str, Any]) -> RecurringSchedule:
    return RecurringSchedule(
        id=row["id"],
        kind=row["type"],
        frequency=row["frequency"],
        account_id=row["account_id"],
        amount=row["amount"],
        day_of_week=row["day_of_week"],
        day_of_month=row["day_of_month"],
        to_account_id=row["to_account_id"],
        category_id=row["category_id"],
        amount_to=row["amount_to"],
        description=row["description"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        last_processed_date=row["last_processed_date"],
        remaining_occurrences=row["remaining_occurrences"],
        end_date=row["end_date"],
    )
