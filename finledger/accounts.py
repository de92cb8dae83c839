from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from math import ceil
from typing import Any, Callable, Mapping, Optional, Sequence

import structlog
from sqlalchemy.engine import Engine

from finledger.db import transaction_scope
from finledger.errors import InvalidArgument
from finledger.ledger import new_id
from finledger.models import (
    ZERO,
    Account,
    AccountKind,
    AssetType,
    PageMeta,
    Transaction,
    TransactionPage,
    coerce_decimal,
    utcnow,
)
from finledger.settings import normalize_currency
from finledger.stores import AccountStore, MovementStore

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100

ACCOUNT_EDITABLE = {
    "name",
    "kind",
    "balance",
    "currency",
    "symbol",
    "asset_type",
    "exclude_from_net_worth",
    "exclude_from_cash_balance",
}
ACCOUNT_REQUIRED = ("kind", "exclude_from_net_worth", "exclude_from_cash_balance")


@dataclass(frozen=True)
class BalanceSplit:
    amount: Decimal
    description: Optional[str] = None
    category_id: Optional[str] = None
    date: Optional[date] = None


class AccountService:
    """Account lifecycle and transaction listings.

    Balance edits made with ``adjust_with_transaction`` are backed by
    adjustment transactions, so the account still equals the sum of its
    movements afterwards.
    """

    def __init__(
        self,
        engine: Engine,
        default_currency: str,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._engine = engine
        self._default_currency = default_currency
        self._clock = clock

    def create_account(
        self,
        name: str,
        kind: str,
        balance: Decimal = ZERO,
        currency: Optional[str] = None,
        symbol: Optional[str] = None,
        asset_type: Optional[str] = None,
        exclude_from_net_worth: bool = False,
        exclude_from_cash_balance: bool = False,
    ) -> Account:
        name = name.strip()
        if not name:
            raise InvalidArgument("Account name required.")
        account = Account(
            id=new_id(),
            name=name,
            kind=AccountKind.validate(kind),
            balance=coerce_decimal(balance),
            currency=self._normalize_currency(currency) if currency and currency.strip() else self._default_currency,
            symbol=(symbol.strip().upper() or None) if symbol else None,
            asset_type=AssetType.validate(asset_type) if asset_type else None,
            exclude_from_net_worth=exclude_from_net_worth,
            exclude_from_cash_balance=exclude_from_cash_balance,
            updated_at=self._clock(),
        )
        with transaction_scope(self._engine) as conn:
            AccountStore(conn).create(account)
        logger.info("account_created", account_id=account.id, kind=account.kind, currency=account.currency)
        return account

    def update_account(
        self,
        account_id: str,
        changes: Mapping[str, Any],
        adjust_with_transaction: bool = False,
        splits: Optional[Sequence[BalanceSplit]] = None,
    ) -> Account:
        unknown = set(changes) - ACCOUNT_EDITABLE
        if unknown:
            raise InvalidArgument(f"Cannot update fields: {', '.join(sorted(unknown))}.")
        values = self._normalize_changes(changes)
        now = self._clock()

        with transaction_scope(self._engine) as conn:
            store = AccountStore(conn)
            existing = store.get(account_id)
            if adjust_with_transaction and "balance" in values:
                difference = values.pop("balance") - existing.balance
                if difference != ZERO:
                    if existing.is_investment:
                        raise InvalidArgument(
                            "Balance adjustments with transactions are only supported for cash accounts."
                        )
                    self._record_adjustment(conn, existing, difference, splits or (), now)
            updated = store.update(account_id, values, now)

        logger.info("account_updated", account_id=account_id, fields=sorted(changes))
        return updated

    def delete_account(self, account_id: str) -> None:
        now = self._clock()
        with transaction_scope(self._engine) as conn:
            accounts = AccountStore(conn)
            movements = MovementStore(conn)
            accounts.get(account_id)

            movement_ids = [txn.id for txn in movements.list_transactions(account_id)]
            movement_ids += [trade.id for trade in movements.list_investment_transactions(account_id)]
            for counterpart in movements.find_linking_to(movement_ids, account_id):
                accounts.adjust_balance(counterpart.account_id, -counterpart.amount, now)
                movements.delete_transaction(counterpart.id)

            for txn in movements.list_transactions(account_id):
                if not txn.linked_transaction_id:
                    continue
                trade = movements.find_investment_transaction(txn.linked_transaction_id)
                if trade is not None and trade.account_id != account_id:
                    accounts.adjust_balance(trade.account_id, -trade.quantity_change, now)
                    movements.delete_investment_transaction(trade.id)

            movements.delete_by_account(account_id)
            accounts.delete(account_id)
        logger.info("account_deleted", account_id=account_id)

    def get_account(self, account_id: str) -> Account:
        with transaction_scope(self._engine) as conn:
            return AccountStore(conn).get(account_id)

    def list_accounts(self) -> list[Account]:
        with transaction_scope(self._engine) as conn:
            return AccountStore(conn).list()

    def list_transactions_page(
        self,
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
        sort_by: str = "date",
        sort_order: str = "desc",
    ) -> TransactionPage:
        if page < 1:
            raise InvalidArgument("Page must be at least 1.")
        if not 1 <= limit <= MAX_PAGE_LIMIT:
            raise InvalidArgument(f"Limit must be between 1 and {MAX_PAGE_LIMIT}.")
        with transaction_scope(self._engine) as conn:
            movements = MovementStore(conn)
            total = movements.count_transactions()
            data = movements.find_paginated((page - 1) * limit, limit, sort_by, sort_order)
        total_pages = ceil(total / limit) if total else 0
        return TransactionPage(
            data=data,
            meta=PageMeta(
                total=total,
                page=page,
                limit=limit,
                total_pages=total_pages,
                has_next=page < total_pages,
                has_prev=page > 1,
            ),
        )

    def transactions_in_range(
        self,
        start_date: date,
        end_date: date,
        account_id: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> list[Transaction]:
        if start_date > end_date:
            raise InvalidArgument("Start date must be on or before end date.")
        with transaction_scope(self._engine) as conn:
            return MovementStore(conn).find_by_date_range(start_date, end_date, account_id, category_id)

    def transactions_since(
        self,
        start_date: date,
        account_id: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> list[Transaction]:
        with transaction_scope(self._engine) as conn:
            return MovementStore(conn).find_from_date(start_date, account_id, category_id)

    def _record_adjustment(
        self,
        conn,
        account: Account,
        difference: Decimal,
        splits: Sequence[BalanceSplit],
        now: datetime,
    ) -> None:
        movements = MovementStore(conn)
        today = now.date()
        if splits:
            split_total = sum((coerce_decimal(split.amount) for split in splits), ZERO)
            if split_total != difference:
                raise InvalidArgument(
                    f"Split amounts must sum to the balance difference ({difference})."
                )
            entries = [
                (coerce_decimal(split.amount), split.description, split.category_id, split.date or today)
                for split in splits
            ]
        else:
            sign = "+" if difference > ZERO else "-"
            entries = [(difference, f"Balance adjustment: {sign}{abs(difference):.2f}", None, today)]

        for amount, description, category_id, on in entries:
            movements.create_transaction(
                Transaction(
                    id=new_id(),
                    account_id=account.id,
                    amount=amount,
                    date=on,
                    category_id=category_id,
                    description=description,
                )
            )
            AccountStore(conn).adjust_balance(account.id, amount, now)
        logger.info("account_balance_adjusted", account_id=account.id, difference=str(difference), entries=len(entries))

    def _normalize_changes(self, changes: Mapping[str, Any]) -> dict[str, Any]:
        values = dict(changes)
        empty = [name for name in ACCOUNT_REQUIRED if name in values and values[name] is None]
        if empty:
            raise InvalidArgument(f"Fields cannot be empty: {', '.join(empty)}.")
        if "name" in values:
            values["name"] = (values["name"] or "").strip()
            if not values["name"]:
                raise InvalidArgument("Account name required.")
        if "kind" in values:
            values["kind"] = AccountKind.validate(values["kind"])
        if "balance" in values:
            if values["balance"] is None:
                raise InvalidArgument("Balance cannot be empty.")
            values["balance"] = coerce_decimal(values["balance"])
        if "currency" in values:
            # a blank currency leaves the stored one untouched
            if values["currency"] and values["currency"].strip():
                values["currency"] = self._normalize_currency(values["currency"])
            else:
                values.pop("currency")
        if values.get("asset_type"):
            values["asset_type"] = AssetType.validate(values["asset_type"])
        if values.get("symbol"):
            values["symbol"] = values["symbol"].strip().upper()
        return values

    @staticmethod
    def _normalize_currency(currency: str) -> str:
        try:
            return normalize_currency(currency)
        except ValueError as exc:
            raise InvalidArgument(str(exc)) from exc
