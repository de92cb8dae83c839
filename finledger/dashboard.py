from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Mapping, Optional

import structlog
from sqlalchemy.engine import Engine

from finledger.currency_conversion import RateProvider, convert_to_base
from finledger.db import transaction_scope
from finledger.errors import InvalidArgument
from finledger.models import ZERO
from finledger.settings import normalize_currency
from finledger.spending_estimate import SpendingEstimate, estimate_spending
from finledger.stores import AccountStore, MovementStore, ScheduleStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class NetWorth:
    total: Decimal
    currency: str
    rates_fetched: bool
    accounts_counted: int


class DashboardService:
    """Read-only summaries over the stores, expressed in one master currency."""

    def __init__(
        self,
        engine: Engine,
        rate_provider: Optional[RateProvider],
        default_currency: str,
    ):
        self._engine = engine
        self._rates = rate_provider
        self._default_currency = default_currency

    def spending_estimate(
        self,
        period: str,
        today: date,
        currency: Optional[str] = None,
        category_id: Optional[str] = None,
        category_names: Optional[Mapping[str, str]] = None,
    ) -> SpendingEstimate:
        target = self._resolve_currency(currency)
        with transaction_scope(self._engine) as conn:
            account_currencies = {
                account.id: account.currency for account in AccountStore(conn).list()
            }
            history = MovementStore(conn).list_transactions()
            schedules = ScheduleStore(conn).find_active()

        rates = self._load_rates(target)
        estimate = estimate_spending(
            history,
            schedules,
            account_currencies,
            rates,
            period,
            target,
            today,
            category_id=category_id,
            category_names=category_names,
        )
        logger.info(
            "spending_estimate_computed",
            period=estimate.period,
            currency=target,
            category_id=category_id,
            estimate=str(estimate.estimate_amount),
            confidence=estimate.confidence_level,
        )
        return estimate

    def net_worth(self, currency: Optional[str] = None) -> NetWorth:
        target = self._resolve_currency(currency)
        with transaction_scope(self._engine) as conn:
            accounts = AccountStore(conn).list()

        rates = self._load_rates(target)
        total = ZERO
        counted = 0
        for account in accounts:
            # investment balances are unit quantities, not money
            if account.is_investment or account.exclude_from_net_worth:
                continue
            total += convert_to_base(account.balance, account.currency, target, rates)
            counted += 1
        return NetWorth(total=total, currency=target, rates_fetched=bool(rates), accounts_counted=counted)

    def _resolve_currency(self, currency: Optional[str]) -> str:
        if not currency:
            return self._default_currency
        try:
            return normalize_currency(currency)
        except ValueError as exc:
            raise InvalidArgument(str(exc)) from exc

    def _load_rates(self, currency: str) -> Mapping[str, Decimal]:
        if self._rates is None:
            return {}
        rates = self._rates.get_rates(currency)
        if not rates:
            logger.warning("dashboard_rates_missing", currency=currency)
        return rates
