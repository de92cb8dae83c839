import datetime as dt
from contextlib import contextmanager
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Iterator, Optional, Union

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy.engine import Engine

from finledger.accounts import AccountService, BalanceSplit
from finledger.currency_conversion import (
    CompositeRateProvider,
    OpenExchangeRateProvider,
    RateProvider,
    StaticRateProvider,
)
from finledger.dashboard import DashboardService
from finledger.db import build_engine, init_db
from finledger.errors import (
    InvalidArgument,
    LedgerError,
    NotFound,
    PriceUnavailable,
    RateLimited,
    StoreUnavailable,
)
from finledger.ledger import BalanceLedger
from finledger.log import configure_logging
from finledger.market_quotes import QuoteProvider, YahooQuoteProvider
from finledger.models import (
    Account,
    AccountKind,
    AssetType,
    Frequency,
    InvestmentTransaction,
    RecurringSchedule,
    ScheduleKind,
    Transaction,
    TradeType,
    utcnow,
)
from finledger.recurring_engine import RecurringScheduleEngine
from finledger.settings import Settings, load_settings

logger = structlog.get_logger(__name__)

ERROR_STATUS = (
    (NotFound, 404),
    (InvalidArgument, 400),
    (PriceUnavailable, 422),
    (RateLimited, 429),
    (StoreUnavailable, 503),
)


@contextmanager
def http_errors() -> Iterator[None]:
    """Translate ledger errors into HTTP responses."""
    try:
        yield
    except LedgerError as exc:
        for error_type, status_code in ERROR_STATUS:
            if isinstance(exc, error_type):
                raise HTTPException(status_code=status_code, detail=str(exc)) from exc
        logger.exception("unhandled_ledger_error")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


class AccountPayload(BaseModel):
    name: str
    type: str
    balance: Decimal = Decimal("0")
    currency: str | None = None
    symbol: str | None = None
    asset_type: str | None = None
    exclude_from_net_worth: bool = False
    exclude_from_cash_balance: bool = False

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        payload.type = AccountKind.validate(payload.type)
        if payload.asset_type is not None:
            payload.asset_type = AssetType.validate(payload.asset_type)
        payload.symbol = _clean(payload.symbol)
        return payload


class BalanceSplitPayload(BaseModel):
    amount: Decimal
    description: str | None = None
    category_id: str | None = None
    date: Optional[dt.date] = None


class AccountUpdatePayload(BaseModel):
    name: str | None = None
    type: str | None = None
    balance: Decimal | None = None
    currency: str | None = None
    symbol: str | None = None
    asset_type: str | None = None
    exclude_from_net_worth: bool | None = None
    exclude_from_cash_balance: bool | None = None
    adjust_with_transaction: bool = False
    split_transactions: list[BalanceSplitPayload] | None = None

    def changes(self) -> dict:
        values = self.model_dump(
            exclude_unset=True, exclude={"adjust_with_transaction", "split_transactions"}
        )
        if "type" in values:
            values["kind"] = values.pop("type")
        return values


class AccountResponse(BaseModel):
    id: str
    name: str
    type: str
    balance: Decimal
    currency: str
    symbol: str | None = None
    asset_type: str | None = None
    exclude_from_net_worth: bool = False
    exclude_from_cash_balance: bool = False
    updated_at: datetime | None = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        values = asdict(account)
        values["type"] = values.pop("kind")
        return cls(**values)


class TransactionPayload(BaseModel):
    account_id: str
    amount: Decimal
    date: date
    category_id: str | None = None
    description: str | None = None
    price: Decimal | None = None
    exclude_from_estimate: bool = False
    is_recurring: bool = False

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.description = _clean(payload.description)
        if payload.price is not None and payload.price <= 0:
            raise ValueError("Price must be greater than zero.")
        return payload


class TransactionUpdatePayload(BaseModel):
    account_id: str | None = None
    amount: Decimal | None = None
    date: Optional[dt.date] = None
    category_id: str | None = None
    description: str | None = None
    exclude_from_estimate: bool | None = None
    is_recurring: bool | None = None


class TransactionResponse(BaseModel):
    id: str
    account_id: str
    amount: Decimal
    date: date
    category_id: str | None = None
    description: str | None = None
    linked_transaction_id: str | None = None
    exclude_from_estimate: bool = False
    is_recurring: bool = False

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "TransactionResponse":
        return cls(**asdict(txn))


class PageMetaResponse(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_prev: bool


class TransactionPageResponse(BaseModel):
    data: list[TransactionResponse]
    meta: PageMetaResponse


class InvestmentTransactionPayload(BaseModel):
    account_id: str
    type: str
    quantity: Decimal
    price: Decimal
    date: date
    notes: str | None = None

    @classmethod
    def validate_payload(
        cls, payload: "InvestmentTransactionPayload"
    ) -> "InvestmentTransactionPayload":
        payload.type = TradeType.validate(payload.type)
        if payload.quantity <= 0 or payload.price <= 0:
            raise ValueError("Quantity and price must be positive numbers.")
        payload.notes = _clean(payload.notes)
        return payload


class InvestmentTransactionResponse(BaseModel):
    id: str
    account_id: str
    type: str
    quantity: Decimal
    price: Decimal
    total_amount: Decimal
    date: date
    notes: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_trade(cls, trade: InvestmentTransaction) -> "InvestmentTransactionResponse":
        return cls(**asdict(trade))


class TransferPayload(BaseModel):
    from_account_id: str
    to_account_id: str
    amount_from: Decimal
    amount_to: Decimal | None = None
    date: date
    fee: Decimal = Decimal("0")
    description: str | None = None
    price: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "TransferPayload") -> "TransferPayload":
        if payload.from_account_id == payload.to_account_id:
            raise ValueError("Cannot transfer to same account.")
        if payload.amount_to is None:
            payload.amount_to = payload.amount_from
        if payload.amount_from <= 0 or payload.amount_to <= 0:
            raise ValueError("Amounts must be positive.")
        if payload.fee < 0:
            raise ValueError("Fee cannot be negative.")
        payload.description = _clean(payload.description)
        return payload


class TransferResponse(BaseModel):
    outgoing_transaction_id: str
    incoming_transaction_id: str
    from_account_id: str
    to_account_id: str
    amount_from: Decimal
    amount_to: Decimal
    exchange_rate: Decimal
    is_investment_transfer: bool


class ExchangeRateResponse(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal


class RecurringSchedulePayload(BaseModel):
    type: str
    frequency: str
    account_id: str
    amount: Decimal
    day_of_week: int | None = None
    day_of_month: int | None = None
    to_account_id: str | None = None
    category_id: str | None = None
    amount_to: Decimal | None = None
    description: str | None = None
    remaining_occurrences: int | None = None
    end_date: Optional[dt.date] = None

    @classmethod
    def validate_payload(cls, payload: "RecurringSchedulePayload") -> "RecurringSchedulePayload":
        payload.type = ScheduleKind.validate(payload.type)
        payload.frequency = Frequency.validate(payload.frequency)
        payload.description = _clean(payload.description)
        return payload


class RecurringScheduleUpdatePayload(BaseModel):
    frequency: str | None = None
    account_id: str | None = None
    amount: Decimal | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    to_account_id: str | None = None
    category_id: str | None = None
    amount_to: Decimal | None = None
    description: str | None = None
    is_active: bool | None = None
    remaining_occurrences: int | None = None
    end_date: Optional[dt.date] = None


class RecurringScheduleResponse(BaseModel):
    id: str
    type: str
    frequency: str
    account_id: str
    amount: Decimal
    day_of_week: int | None = None
    day_of_month: int | None = None
    to_account_id: str | None = None
    category_id: str | None = None
    amount_to: Decimal | None = None
    description: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    last_processed_date: Optional[dt.date] = None
    remaining_occurrences: int | None = None
    end_date: Optional[dt.date] = None

    @classmethod
    def from_schedule(cls, schedule: RecurringSchedule) -> "RecurringScheduleResponse":
        values = asdict(schedule)
        values["type"] = values.pop("kind")
        return cls(**values)


class ProcessingReportResponse(BaseModel):
    run_date: date
    fired: list[str]
    deactivated: list[str]
    skipped: list[str]
    failed: dict[str, str]


class CategoryEstimateResponse(BaseModel):
    category_id: str
    category_name: str | None = None
    estimate_amount: Decimal
    historical_average: Decimal


class SpendingEstimateResponse(BaseModel):
    period: str
    currency: str
    estimate_amount: Decimal
    confidence_level: int
    historical_average_recent: Decimal
    historical_average_full: Decimal
    variance_percentage: Decimal
    recurring: Decimal
    non_recurring: Decimal
    week_of_month: int | None = None
    category_breakdown: list[CategoryEstimateResponse]


class NetWorthResponse(BaseModel):
    total: Decimal
    currency: str
    rates_fetched: bool
    accounts_counted: int


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    quote_provider: QuoteProvider | None = None,
    rate_provider: RateProvider | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    engine = engine or build_engine(settings.database_url)
    if quote_provider is None:
        quote_provider = YahooQuoteProvider(base_url=settings.quote_url)
    if rate_provider is None:
        rate_provider = CompositeRateProvider(
            primary=OpenExchangeRateProvider(
                base_url=settings.exchange_rate_url,
                cache_ttl_seconds=settings.rate_cache_ttl_seconds,
            ),
            fallback=StaticRateProvider(),
        )

    ledger = BalanceLedger(engine, quote_provider=quote_provider, rate_provider=rate_provider)
    schedules = RecurringScheduleEngine(engine, ledger)
    account_service = AccountService(engine, settings.default_currency)
    dashboard = DashboardService(engine, rate_provider, settings.default_currency)

    app = FastAPI()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def startup() -> None:
        init_db(engine)
        logger.info("finledger_started", default_currency=settings.default_currency)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    # accounts

    @app.get("/accounts", response_model=list[AccountResponse])
    def list_accounts() -> list[AccountResponse]:
        with http_errors():
            return [AccountResponse.from_account(account) for account in account_service.list_accounts()]

    @app.get("/accounts/{account_id}", response_model=AccountResponse)
    def get_account(account_id: str) -> AccountResponse:
        with http_errors():
            return AccountResponse.from_account(account_service.get_account(account_id))

    @app.post("/accounts", response_model=AccountResponse)
    def create_account(payload: AccountPayload) -> AccountResponse:
        try:
            payload = AccountPayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        with http_errors():
            account = account_service.create_account(
                payload.name,
                payload.type,
                balance=payload.balance,
                currency=payload.currency,
                symbol=payload.symbol,
                asset_type=payload.asset_type,
                exclude_from_net_worth=payload.exclude_from_net_worth,
                exclude_from_cash_balance=payload.exclude_from_cash_balance,
            )
        return AccountResponse.from_account(account)

    @app.put("/accounts/{account_id}", response_model=AccountResponse)
    def update_account(account_id: str, payload: AccountUpdatePayload) -> AccountResponse:
        splits = [
            BalanceSplit(
                amount=split.amount,
                description=_clean(split.description),
                category_id=split.category_id,
                date=split.date,
            )
            for split in payload.split_transactions or []
        ]
        with http_errors():
            account = account_service.update_account(
                account_id,
                payload.changes(),
                adjust_with_transaction=payload.adjust_with_transaction,
                splits=splits,
            )
        return AccountResponse.from_account(account)

    @app.delete("/accounts/{account_id}")
    def delete_account(account_id: str) -> dict:
        with http_errors():
            account_service.delete_account(account_id)
        return {"status": "deleted"}

    # transactions

    @app.get("/transactions", response_model=TransactionPageResponse)
    def list_transactions(
        page: int = Query(1),
        limit: int = Query(20),
        sort_by: str = Query("date"),
        sort_order: str = Query("desc"),
    ) -> TransactionPageResponse:
        with http_errors():
            result = account_service.list_transactions_page(page, limit, sort_by, sort_order)
        return TransactionPageResponse(
            data=[TransactionResponse.from_transaction(txn) for txn in result.data],
            meta=PageMetaResponse(**asdict(result.meta)),
        )

    @app.get("/transactions/range", response_model=list[TransactionResponse])
    def list_transactions_in_range(
        start_date: date = Query(...),
        end_date: date = Query(...),
        account_id: str | None = Query(None),
        category_id: str | None = Query(None),
    ) -> list[TransactionResponse]:
        with http_errors():
            rows = account_service.transactions_in_range(start_date, end_date, account_id, category_id)
        return [TransactionResponse.from_transaction(txn) for txn in rows]

    @app.get("/transactions/since", response_model=list[TransactionResponse])
    def list_transactions_since(
        start_date: date = Query(...),
        account_id: str | None = Query(None),
        category_id: str | None = Query(None),
    ) -> list[TransactionResponse]:
        with http_errors():
            rows = account_service.transactions_since(start_date, account_id, category_id)
        return [TransactionResponse.from_transaction(txn) for txn in rows]

    @app.post("/transactions/recurring/clone", response_model=list[TransactionResponse])
    def clone_recurring_transactions(run_date: date | None = Query(None)) -> list[TransactionResponse]:
        with http_errors():
            created = schedules.clone_recurring_transactions(run_date or utcnow().date())
        return [TransactionResponse.from_transaction(txn) for txn in created]

    @app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
    def get_transaction(transaction_id: str) -> TransactionResponse:
        with http_errors():
            return TransactionResponse.from_transaction(ledger.get_transaction(transaction_id))

    @app.post(
        "/transactions",
        response_model=Union[TransactionResponse, InvestmentTransactionResponse],
    )
    def create_transaction(
        payload: TransactionPayload,
    ) -> Union[TransactionResponse, InvestmentTransactionResponse]:
        try:
            payload = TransactionPayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        with http_errors():
            movement = ledger.record_transaction(
                payload.account_id,
                payload.amount,
                payload.date,
                category_id=payload.category_id,
                description=payload.description,
                price=payload.price,
                exclude_from_estimate=payload.exclude_from_estimate,
                is_recurring=payload.is_recurring,
            )
        if isinstance(movement, InvestmentTransaction):
            return InvestmentTransactionResponse.from_trade(movement)
        return TransactionResponse.from_transaction(movement)

    @app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
    def update_transaction(transaction_id: str, payload: TransactionUpdatePayload) -> TransactionResponse:
        with http_errors():
            updated = ledger.update_transaction(transaction_id, payload.model_dump(exclude_unset=True))
        return TransactionResponse.from_transaction(updated)

    @app.delete("/transactions/{transaction_id}")
    def delete_transaction(transaction_id: str) -> dict:
        with http_errors():
            ledger.delete_transaction(transaction_id)
        return {"status": "deleted"}

    # transfers and rates

    @app.post("/transfers", response_model=TransferResponse)
    def create_transfer(payload: TransferPayload) -> TransferResponse:
        try:
            payload = TransferPayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        with http_errors():
            result = ledger.create_transfer(
                payload.from_account_id,
                payload.to_account_id,
                payload.amount_from,
                payload.amount_to,
                payload.date,
                fee=payload.fee,
                description=payload.description,
                price=payload.price,
            )
        return TransferResponse(**asdict(result))

    @app.get("/exchange-rate", response_model=ExchangeRateResponse)
    def get_exchange_rate(
        from_currency: str = Query(..., alias="from"),
        to_currency: str = Query(..., alias="to"),
    ) -> ExchangeRateResponse:
        with http_errors():
            rate = ledger.get_exchange_rate(from_currency, to_currency)
        return ExchangeRateResponse(
            from_currency=from_currency.strip().upper(),
            to_currency=to_currency.strip().upper(),
            rate=rate,
        )

    # investment transactions

    @app.get("/investment-transactions", response_model=list[InvestmentTransactionResponse])
    def list_investment_transactions(
        account_id: str | None = Query(None),
    ) -> list[InvestmentTransactionResponse]:
        with http_errors():
            trades = ledger.list_investment_transactions(account_id)
        return [InvestmentTransactionResponse.from_trade(trade) for trade in trades]

    @app.post("/investment-transactions", response_model=InvestmentTransactionResponse)
    def create_investment_transaction(
        payload: InvestmentTransactionPayload,
    ) -> InvestmentTransactionResponse:
        try:
            payload = InvestmentTransactionPayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        with http_errors():
            trade = ledger.create_investment_transaction(
                payload.account_id,
                payload.type,
                payload.quantity,
                payload.price,
                payload.date,
                notes=payload.notes,
            )
        return InvestmentTransactionResponse.from_trade(trade)

    @app.delete("/investment-transactions/{trade_id}")
    def delete_investment_transaction(trade_id: str) -> dict:
        with http_errors():
            ledger.delete_investment_transaction(trade_id)
        return {"status": "deleted"}

    # recurring schedules

    @app.get("/recurring-schedules", response_model=list[RecurringScheduleResponse])
    def list_recurring_schedules() -> list[RecurringScheduleResponse]:
        with http_errors():
            return [RecurringScheduleResponse.from_schedule(s) for s in schedules.list_schedules()]

    @app.post("/recurring-schedules/process", response_model=ProcessingReportResponse)
    def process_recurring_schedules(run_date: date | None = Query(None)) -> ProcessingReportResponse:
        with http_errors():
            report = schedules.process_due(run_date or utcnow().date())
        return ProcessingReportResponse(**asdict(report))

    @app.get("/recurring-schedules/{schedule_id}", response_model=RecurringScheduleResponse)
    def get_recurring_schedule(schedule_id: str) -> RecurringScheduleResponse:
        with http_errors():
            return RecurringScheduleResponse.from_schedule(schedules.get_schedule(schedule_id))

    @app.post("/recurring-schedules", response_model=RecurringScheduleResponse)
    def create_recurring_schedule(payload: RecurringSchedulePayload) -> RecurringScheduleResponse:
        try:
            payload = RecurringSchedulePayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        with http_errors():
            schedule = schedules.create_schedule(
                payload.type,
                payload.frequency,
                payload.account_id,
                payload.amount,
                day_of_week=payload.day_of_week,
                day_of_month=payload.day_of_month,
                to_account_id=payload.to_account_id,
                category_id=payload.category_id,
                amount_to=payload.amount_to,
                description=payload.description,
                remaining_occurrences=payload.remaining_occurrences,
                end_date=payload.end_date,
            )
        return RecurringScheduleResponse.from_schedule(schedule)

    @app.put("/recurring-schedules/{schedule_id}", response_model=RecurringScheduleResponse)
    def update_recurring_schedule(
        schedule_id: str, payload: RecurringScheduleUpdatePayload
    ) -> RecurringScheduleResponse:
        with http_errors():
            schedule = schedules.update_schedule(schedule_id, payload.model_dump(exclude_unset=True))
        return RecurringScheduleResponse.from_schedule(schedule)

    @app.delete("/recurring-schedules/{schedule_id}")
    def delete_recurring_schedule(schedule_id: str) -> dict:
        with http_errors():
            schedules.delete_schedule(schedule_id)
        return {"status": "deleted"}

    # dashboard

    @app.get("/dashboard/net-worth", response_model=NetWorthResponse)
    def get_net_worth(currency: str | None = Query(None)) -> NetWorthResponse:
        with http_errors():
            result = dashboard.net_worth(currency)
        return NetWorthResponse(**asdict(result))

    @app.get("/dashboard/spending-estimate", response_model=SpendingEstimateResponse)
    def get_spending_estimate(
        period: str = Query("month"),
        currency: str | None = Query(None),
        category_id: str | None = Query(None),
    ) -> SpendingEstimateResponse:
        with http_errors():
            estimate = dashboard.spending_estimate(
                period, utcnow().date(), currency=currency, category_id=category_id
            )
        return SpendingEstimateResponse(**asdict(estimate))

    return app


def serve() -> None:
    """Configure logging once and run the API under uvicorn."""
    settings = load_settings()
    configure_logging(settings)
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    serve()
