"""Balance ledger: keeps ``Account.balance`` equal to the net effect of movements.

Every mutation runs inside one datastore transaction and touches balances only
through ``AccountStore.adjust_balance``, which increments the stored value in a
single statement. Concurrent callers therefore never lose each other's updates.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Union
from uuid import uuid4

import structlog
from sqlalchemy.engine import Connection, Engine

from finledger.currency_conversion import RateProvider
from finledger.db import transaction_scope
from finledger.errors import InvalidArgument, PriceUnavailable
from finledger.market_quotes import QuoteProvider
from finledger.models import (
    ZERO,
    Account,
    InvestmentTransaction,
    Transaction,
    TradeType,
    TransferResult,
    coerce_decimal,
    utcnow,
)
from finledger.stores import AccountStore, MovementStore

logger = structlog.get_logger(__name__)

Movement = Union[Transaction, InvestmentTransaction]

TRANSACTION_EDITABLE = {
    "account_id",
    "category_id",
    "amount",
    "description",
    "date",
    "exclude_from_estimate",
    "is_recurring",
}


def new_id() -> str:
    return str(uuid4())


class LedgerSession:
    """Ledger operations bound to one open connection."""

    def __init__(
        self,
        conn: Connection,
        quote_provider: Optional[QuoteProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.accounts = AccountStore(conn)
        self.movements = MovementStore(conn)
        self._quotes = quote_provider
        self._clock = clock

    def record_transaction(
        self,
        account_id: str,
        amount: Decimal,
        date: date,
        category_id: Optional[str] = None,
        description: Optional[str] = None,
        price: Optional[Decimal] = None,
        exclude_from_estimate: bool = False,
        is_recurring: bool = False,
    ) -> Movement:
        account = self.accounts.get(account_id)
        amount = coerce_decimal(amount)

        if account.is_investment:
            return self._record_trade_from_amount(account, amount, date, description, price)

        txn = self.movements.create_transaction(
            Transaction(
                id=new_id(),
                account_id=account.id,
                amount=amount,
                date=date,
                category_id=category_id,
                description=description,
                exclude_from_estimate=exclude_from_estimate,
                is_recurring=is_recurring,
            )
        )
        self.accounts.adjust_balance(account.id, amount, self._clock())
        logger.info("transaction_recorded", transaction_id=txn.id, account_id=account.id, amount=str(amount))
        return txn

    def update_transaction(self, transaction_id: str, changes: Mapping[str, Any]) -> Transaction:
        unknown = set(changes) - TRANSACTION_EDITABLE
        if unknown:
            raise InvalidArgument(f"Cannot update fields: {', '.join(sorted(unknown))}.")
        old = self.movements.get_transaction(transaction_id)

        values = dict(changes)
        # required columns keep their stored value when passed as None
        for name in ("account_id", "amount", "date", "exclude_from_estimate", "is_recurring"):
            if name in values and values[name] is None:
                values.pop(name)
        if "amount" in values:
            values["amount"] = coerce_decimal(values["amount"])
        new_account_id = values.get("account_id", old.account_id)
        new_amount = values.get("amount", old.amount)
        if new_account_id != old.account_id:
            self.accounts.get(new_account_id)

        now = self._clock()
        self.accounts.adjust_balance(old.account_id, -old.amount, now)
        updated = self.movements.update_transaction(transaction_id, values)
        self.accounts.adjust_balance(new_account_id, new_amount, now)
        logger.info(
            "transaction_updated",
            transaction_id=transaction_id,
            old_account_id=old.account_id,
            new_account_id=new_account_id,
            old_amount=str(old.amount),
            new_amount=str(new_amount),
        )
        return updated

    def delete_transaction(self, transaction_id: str) -> None:
        txn = self.movements.get_transaction(transaction_id)
        now = self._clock()
        self.accounts.adjust_balance(txn.account_id, -txn.amount, now)

        if txn.linked_transaction_id:
            self._delete_linked_leg(txn, now)

        self.movements.delete_transaction(txn.id)
        logger.info("transaction_deleted", transaction_id=txn.id, account_id=txn.account_id)

    def create_transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount_from: Decimal,
        amount_to: Decimal,
        date: date,
        fee: Decimal = ZERO,
        description: Optional[str] = None,
        price: Optional[Decimal] = None,
    ) -> TransferResult:
        amount_from = coerce_decimal(amount_from)
        amount_to = coerce_decimal(amount_to)
        fee = coerce_decimal(fee or ZERO)
        if from_account_id == to_account_id:
            raise InvalidArgument("Cannot transfer to same account.")
        if amount_from <= ZERO or amount_to <= ZERO:
            raise InvalidArgument("Amounts must be positive.")
        if fee < ZERO:
            raise InvalidArgument("Fee cannot be negative.")

        from_account = self.accounts.get(from_account_id)
        to_account = self.accounts.get(to_account_id)
        outgoing_desc, incoming_desc = transfer_descriptions(
            from_account, to_account, amount_from, amount_to, fee, description
        )

        if to_account.is_investment:
            unit_price = self._resolve_price(to_account, price, date)

        outgoing_id = new_id()
        incoming_id = new_id()
        now = self._clock()

        self.movements.create_transaction(
            Transaction(
                id=outgoing_id,
                account_id=from_account.id,
                amount=-amount_from,
                date=date,
                description=outgoing_desc,
                linked_transaction_id=incoming_id,
            )
        )
        self.accounts.adjust_balance(from_account.id, -amount_from, now)

        if to_account.is_investment:
            self.movements.create_investment_transaction(
                InvestmentTransaction(
                    id=incoming_id,
                    account_id=to_account.id,
                    type=TradeType.BUY,
                    quantity=amount_to,
                    price=unit_price,
                    total_amount=amount_to * unit_price,
                    date=date,
                    notes=incoming_desc,
                    created_at=now,
                )
            )
        else:
            self.movements.create_transaction(
                Transaction(
                    id=incoming_id,
                    account_id=to_account.id,
                    amount=amount_to,
                    date=date,
                    description=incoming_desc,
                    linked_transaction_id=outgoing_id,
                )
            )
        self.accounts.adjust_balance(to_account.id, amount_to, now)

        logger.info(
            "transfer_created",
            from_account_id=from_account.id,
            to_account_id=to_account.id,
            amount_from=str(amount_from),
            amount_to=str(amount_to),
            investment=to_account.is_investment,
        )
        return TransferResult(
            outgoing_transaction_id=outgoing_id,
            incoming_transaction_id=incoming_id,
            from_account_id=from_account.id,
            to_account_id=to_account.id,
            amount_from=amount_from,
            amount_to=amount_to,
            exchange_rate=amount_to / amount_from,
            is_investment_transfer=to_account.is_investment,
        )

    def create_investment_transaction(
        self,
        account_id: str,
        trade_type: str,
        quantity: Decimal,
        price: Decimal,
        date: date,
        notes: Optional[str] = None,
    ) -> InvestmentTransaction:
        account = self.accounts.get(account_id)
        if not account.is_investment:
            raise InvalidArgument("Account must be of type investment.")
        trade_type = TradeType.validate(trade_type)
        quantity = coerce_decimal(quantity)
        price = coerce_decimal(price)
        if quantity <= ZERO or price <= ZERO:
            raise InvalidArgument("Quantity and price must be positive numbers.")
        return self._create_trade(account, trade_type, quantity, price, date, notes)

    def delete_investment_transaction(self, trade_id: str) -> None:
        trade = self.movements.get_investment_transaction(trade_id)
        self.accounts.adjust_balance(trade.account_id, -trade.quantity_change, self._clock())
        self.movements.delete_investment_transaction(trade.id)
        logger.info("investment_transaction_deleted", trade_id=trade.id, account_id=trade.account_id)

    def _record_trade_from_amount(
        self,
        account: Account,
        amount: Decimal,
        date: date,
        description: Optional[str],
        price: Optional[Decimal],
    ) -> InvestmentTransaction:
        if amount == ZERO:
            raise InvalidArgument("Quantity must be greater than zero.")
        trade_type = TradeType.BUY if amount > ZERO else TradeType.SELL
        unit_price = self._resolve_price(account, price, date)
        return self._create_trade(account, trade_type, abs(amount), unit_price, date, description)

    def _create_trade(
        self,
        account: Account,
        trade_type: str,
        quantity: Decimal,
        price: Decimal,
        date: date,
        notes: Optional[str],
    ) -> InvestmentTransaction:
        now = self._clock()
        trade = self.movements.create_investment_transaction(
            InvestmentTransaction(
                id=new_id(),
                account_id=account.id,
                type=trade_type,
                quantity=quantity,
                price=price,
                total_amount=quantity * price,
                date=date,
                notes=notes,
                created_at=now,
            )
        )
        self.accounts.adjust_balance(account.id, trade.quantity_change, now)
        logger.info(
            "investment_transaction_recorded",
            trade_id=trade.id,
            account_id=account.id,
            type=trade_type,
            quantity=str(quantity),
            price=str(price),
        )
        return trade

    def _resolve_price(self, account: Account, price: Optional[Decimal], on: date) -> Decimal:
        if price is not None:
            price = coerce_decimal(price)
            if price <= ZERO:
                raise InvalidArgument("Price must be greater than zero.")
            return price
        if self._quotes is None or not account.symbol or account.asset_type == "manual":
            raise PriceUnavailable(
                f"No price supplied for {account.name} and none can be looked up; enter the price manually."
            )
        return self._quotes.get_quote(account.symbol, on)

    def _delete_linked_leg(self, txn: Transaction, now: datetime) -> None:
        linked = self.movements.find_transaction(txn.linked_transaction_id)
        if linked is not None:
            self.accounts.adjust_balance(linked.account_id, -linked.amount, now)
            self.movements.delete_transaction(linked.id)
            return

        trade = self.movements.find_investment_transaction(txn.linked_transaction_id)
        if trade is not None:
            self.accounts.adjust_balance(trade.account_id, -trade.quantity_change, now)
            self.movements.delete_investment_transaction(trade.id)
            return

        logger.warning(
            "linked_leg_missing",
            transaction_id=txn.id,
            linked_transaction_id=txn.linked_transaction_id,
        )


class BalanceLedger:
    """Opens a datastore transaction per call and runs it through ``LedgerSession``."""

    def __init__(
        self,
        engine: Engine,
        quote_provider: Optional[QuoteProvider] = None,
        rate_provider: Optional[RateProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._engine = engine
        self._quotes = quote_provider
        self._rates = rate_provider
        self._clock = clock

    def session(self, conn: Connection) -> LedgerSession:
        return LedgerSession(conn, quote_provider=self._quotes, clock=self._clock)

    def record_transaction(self, account_id: str, amount: Decimal, date: date, **kwargs) -> Movement:
        with transaction_scope(self._engine) as conn:
            return self.session(conn).record_transaction(account_id, amount, date, **kwargs)

    def update_transaction(self, transaction_id: str, changes: Mapping[str, Any]) -> Transaction:
        with transaction_scope(self._engine) as conn:
            return self.session(conn).update_transaction(transaction_id, changes)

    def delete_transaction(self, transaction_id: str) -> None:
        with transaction_scope(self._engine) as conn:
            self.session(conn).delete_transaction(transaction_id)

    def create_transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount_from: Decimal,
        amount_to: Decimal,
        date: date,
        **kwargs,
    ) -> TransferResult:
        with transaction_scope(self._engine) as conn:
            return self.session(conn).create_transfer(
                from_account_id, to_account_id, amount_from, amount_to, date, **kwargs
            )

    def create_investment_transaction(
        self,
        account_id: str,
        trade_type: str,
        quantity: Decimal,
        price: Decimal,
        date: date,
        notes: Optional[str] = None,
    ) -> InvestmentTransaction:
        with transaction_scope(self._engine) as conn:
            return self.session(conn).create_investment_transaction(
                account_id, trade_type, quantity, price, date, notes
            )

    def delete_investment_transaction(self, trade_id: str) -> None:
        with transaction_scope(self._engine) as conn:
            self.session(conn).delete_investment_transaction(trade_id)

    def get_transaction(self, transaction_id: str) -> Transaction:
        with transaction_scope(self._engine) as conn:
            return MovementStore(conn).get_transaction(transaction_id)

    def list_investment_transactions(
        self, account_id: Optional[str] = None
    ) -> list[InvestmentTransaction]:
        with transaction_scope(self._engine) as conn:
            return MovementStore(conn).list_investment_transactions(account_id)

    def get_exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        source = from_currency.strip().upper()
        target = to_currency.strip().upper()
        if source == target:
            return Decimal("1")
        rates = self._rates.get_rates(source) if self._rates is not None else {}
        rate = rates.get(target)
        if not rate:
            raise PriceUnavailable("Exchange rate not available.")
        return coerce_decimal(rate)


def transfer_descriptions(
    from_account: Account,
    to_account: Account,
    amount_from: Decimal,
    amount_to: Decimal,
    fee: Decimal,
    description: Optional[str],
) -> tuple[str, str]:
    outgoing = f"Transfer to {to_account.name}"
    incoming = f"Transfer from {from_account.name}"

    if from_account.currency != to_account.currency:
        rate = amount_to / amount_from
        outgoing += f" ({amount_to:.2f} {to_account.currency} @ {rate:.4f})"
        incoming += f" ({amount_from:.2f} {from_account.currency} @ {rate:.4f})"

    if fee > ZERO:
        outgoing += f" (incl. fee {fee:.2f} {from_account.currency})"

    if description:
        outgoing += f" - {description}"
        incoming += f" - {description}"
    return outgoing, incoming
