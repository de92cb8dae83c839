from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from finledger.errors import InvalidArgument

ZERO = Decimal("0")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class AccountKind:
    CASH = "cash"
    INVESTMENT = "investment"
    values = {CASH, INVESTMENT}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise InvalidArgument("Invalid account type.")
        return normalized


class AssetType:
    values = {"stock", "crypto", "manual"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise InvalidArgument("Invalid asset type.")
        return normalized


class TradeType:
    BUY = "buy"
    SELL = "sell"
    values = {BUY, SELL}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise InvalidArgument("Type must be either 'buy' or 'sell'.")
        return normalized


class ScheduleKind:
    TRANSACTION = "transaction"
    TRANSFER = "transfer"
    values = {TRANSACTION, TRANSFER}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise InvalidArgument("Invalid type.")
        return normalized


class Frequency:
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    values = {DAILY, WEEKLY, MONTHLY}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise InvalidArgument("Invalid frequency.")
        return normalized


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    kind: str
    balance: Decimal
    currency: str
    symbol: Optional[str] = None
    asset_type: Optional[str] = None
    exclude_from_net_worth: bool = False
    exclude_from_cash_balance: bool = False
    updated_at: Optional[datetime] = None

    @property
    def is_investment(self) -> bool:
        return self.kind == AccountKind.INVESTMENT


@dataclass(frozen=True)
class Transaction:
    id: str
    account_id: str
    amount: Decimal
    date: date
    category_id: Optional[str] = None
    description: Optional[str] = None
    linked_transaction_id: Optional[str] = None
    exclude_from_estimate: bool = False
    is_recurring: bool = False

    @property
    def is_transfer_leg(self) -> bool:
        return self.linked_transaction_id is not None


@dataclass(frozen=True)
class InvestmentTransaction:
    id: str
    account_id: str
    type: str
    quantity: Decimal
    price: Decimal
    total_amount: Decimal
    date: date
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def quantity_change(self) -> Decimal:
        """Signed effect of the trade on the holding account's balance."""
        return self.quantity if self.type == TradeType.BUY else -self.quantity


@dataclass(frozen=True)
class RecurringSchedule:
    id: str
    kind: str
    frequency: str
    account_id: str
    amount: Decimal
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    to_account_id: Optional[str] = None
    category_id: Optional[str] = None
    amount_to: Optional[Decimal] = None
    description: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    last_processed_date: Optional[date] = None
    remaining_occurrences: Optional[int] = None
    end_date: Optional[date] = None


@dataclass(frozen=True)
class TransferResult:
    outgoing_transaction_id: str
    incoming_transaction_id: str
    from_account_id: str
    to_account_id: str
    amount_from: Decimal
    amount_to: Decimal
    exchange_rate: Decimal
    is_investment_transfer: bool


@dataclass(frozen=True)
class PageMeta:
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_prev: bool


@dataclass(frozen=True)
class TransactionPage:
    data: list[Transaction]
    meta: PageMeta
