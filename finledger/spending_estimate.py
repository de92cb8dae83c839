from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional, Sequence

from finledger.currency_conversion import convert_to_base
from finledger.dates import (
    clamp_day,
    shift_month,
    shift_month_keep_day,
    start_of_next_month,
    start_of_next_week,
    week_of_month,
)
from finledger.errors import InvalidArgument
from finledger.models import ZERO, Frequency, RecurringSchedule, ScheduleKind, Transaction

SUPPORTED_PERIODS = {"week", "month"}
RECENT_MONTHS = 6
RECENT_WEIGHT = Decimal("0.7")
FULL_WEIGHT = Decimal("0.3")
WINDOW_DAYS = {"week": 7, "month": 30}


@dataclass(frozen=True)
class ConvertedExpense:
    date: date
    amount: Decimal
    category_id: Optional[str] = None


@dataclass(frozen=True)
class HistoricalAverages:
    recent: Decimal
    full: Decimal
    confidence: int


@dataclass(frozen=True)
class CategoryEstimate:
    category_id: str
    category_name: Optional[str]
    estimate_amount: Decimal
    historical_average: Decimal


@dataclass(frozen=True)
class SpendingEstimate:
    period: str
    currency: str
    estimate_amount: Decimal
    confidence_level: int
    historical_average_recent: Decimal
    historical_average_full: Decimal
    variance_percentage: Decimal
    recurring: Decimal
    non_recurring: Decimal
    week_of_month: Optional[int] = None
    category_breakdown: List[CategoryEstimate] = field(default_factory=list)


def estimate_spending(
    transactions: Iterable[Transaction],
    schedules: Iterable[RecurringSchedule],
    account_currencies: Mapping[str, str],
    rates: Mapping[str, Decimal],
    period: str,
    currency: str,
    today: date,
    category_id: Optional[str] = None,
    category_names: Optional[Mapping[str, str]] = None,
) -> SpendingEstimate:
    """Project spending for the next week or month.

    History is blended 70/30 between the last six months and the full record,
    then the active recurring schedules expected in the next period are added.
    """
    normalized_period = period.strip().lower()
    if normalized_period not in SUPPORTED_PERIODS:
        raise InvalidArgument("Period must be 'week' or 'month'.")
    target_currency = currency.strip().upper()
    target_week = week_of_month(today)

    expenses = [
        ConvertedExpense(
            date=txn.date,
            amount=convert_to_base(
                txn.amount,
                account_currencies.get(txn.account_id, target_currency),
                target_currency,
                rates,
            ),
            category_id=txn.category_id,
        )
        for txn in transactions
        if _is_expense(txn) and (category_id is None or txn.category_id == category_id)
    ]

    averages = historical_averages(expenses, normalized_period, today)
    baseline = averages.recent * RECENT_WEIGHT + averages.full * FULL_WEIGHT

    period_start = (
        start_of_next_week(today) if normalized_period == "week" else start_of_next_month(today)
    )
    recurring = recurring_for_period(
        schedules,
        account_currencies,
        rates,
        target_currency,
        period_start,
        WINDOW_DAYS[normalized_period],
        category_id,
    )

    total = abs(baseline) + recurring
    full_abs = abs(averages.full)
    variance = (total - full_abs) / full_abs * 100 if full_abs != ZERO else ZERO

    return SpendingEstimate(
        period=normalized_period,
        currency=target_currency,
        estimate_amount=total,
        confidence_level=averages.confidence,
        historical_average_recent=abs(averages.recent),
        historical_average_full=full_abs,
        variance_percentage=variance,
        recurring=recurring,
        non_recurring=abs(baseline),
        week_of_month=target_week if normalized_period == "week" else None,
        category_breakdown=category_breakdown(
            expenses, normalized_period, today, category_names or {}
        ),
    )


def historical_averages(
    expenses: Sequence[ConvertedExpense], period: str, today: date
) -> HistoricalAverages:
    cutoff = shift_month_keep_day(today, -RECENT_MONTHS)
    recent = [expense for expense in expenses if expense.date >= cutoff]
    if period == "week":
        return _weekly_averages(expenses, recent, week_of_month(today))
    return _monthly_averages(expenses, recent)


def recurring_for_period(
    schedules: Iterable[RecurringSchedule],
    account_currencies: Mapping[str, str],
    rates: Mapping[str, Decimal],
    currency: str,
    period_start: date,
    window_days: int,
    category_id: Optional[str] = None,
) -> Decimal:
    total = ZERO
    for schedule in schedules:
        if not schedule.is_active:
            continue
        is_outflow = schedule.kind == ScheduleKind.TRANSFER or (
            schedule.kind == ScheduleKind.TRANSACTION and schedule.amount < ZERO
        )
        if not is_outflow:
            continue
        if category_id is not None and schedule.category_id != category_id:
            continue
        occurrences = occurrences_in_window(schedule, period_start, window_days)
        if occurrences == 0:
            continue
        amount = abs(schedule.amount) * occurrences
        total += convert_to_base(
            amount,
            account_currencies.get(schedule.account_id, currency),
            currency,
            rates,
        )
    return total


def occurrences_in_window(
    schedule: RecurringSchedule, window_start: date, window_days: int
) -> int:
    window_end = window_start + timedelta(days=window_days - 1)
    if schedule.end_date is not None and schedule.end_date < window_start:
        return 0
    if schedule.remaining_occurrences is not None and schedule.remaining_occurrences <= 0:
        return 0

    if schedule.frequency == Frequency.DAILY:
        count = window_days
    elif schedule.frequency == Frequency.WEEKLY:
        count = (window_days + 6) // 7
    elif schedule.frequency == Frequency.MONTHLY and schedule.day_of_month:
        candidate = clamp_day(window_start.year, window_start.month, schedule.day_of_month)
        if candidate < window_start:
            following = shift_month(window_start, 1)
            candidate = clamp_day(following.year, following.month, schedule.day_of_month)
        count = 1 if candidate <= window_end else 0
    else:
        return 0

    if schedule.remaining_occurrences is not None:
        count = min(count, schedule.remaining_occurrences)
    return count


def category_breakdown(
    expenses: Sequence[ConvertedExpense],
    period: str,
    today: date,
    category_names: Mapping[str, str],
) -> List[CategoryEstimate]:
    grouped: dict[str, list[ConvertedExpense]] = {}
    for expense in expenses:
        if not expense.category_id:
            continue
        grouped.setdefault(expense.category_id, []).append(expense)

    breakdown = []
    for category_id, items in grouped.items():
        averages = historical_averages(items, period, today)
        estimate = abs(averages.recent * RECENT_WEIGHT + averages.full * FULL_WEIGHT)
        breakdown.append(
            CategoryEstimate(
                category_id=category_id,
                category_name=category_names.get(category_id),
                estimate_amount=estimate,
                historical_average=abs(averages.full),
            )
        )
    breakdown.sort(key=lambda item: (-item.estimate_amount, item.category_id))
    return breakdown


def _is_expense(txn: Transaction) -> bool:
    return txn.amount < ZERO and not txn.is_transfer_leg and not txn.exclude_from_estimate


def _weekly_averages(
    expenses: Sequence[ConvertedExpense],
    recent: Sequence[ConvertedExpense],
    target_week: int,
) -> HistoricalAverages:
    recent_week = [expense for expense in recent if week_of_month(expense.date) == target_week]
    full_week = [expense for expense in expenses if week_of_month(expense.date) == target_week]

    recent_weeks = _count_months(recent_week)
    full_weeks = _count_months(full_week)

    recent_avg = _sum(recent_week) / recent_weeks if recent_weeks else ZERO
    full_avg = _sum(full_week) / full_weeks if full_weeks else ZERO
    confidence = min(100, (recent_weeks + full_weeks) * 10)
    return HistoricalAverages(recent=recent_avg, full=full_avg, confidence=confidence)


def _monthly_averages(
    expenses: Sequence[ConvertedExpense],
    recent: Sequence[ConvertedExpense],
) -> HistoricalAverages:
    recent_months = _count_months(recent)
    full_months = _count_months(expenses)

    recent_avg = _sum(recent) / recent_months if recent_months else ZERO
    full_avg = _sum(expenses) / full_months if full_months else ZERO
    confidence = min(100, full_months * 8)
    return HistoricalAverages(recent=recent_avg, full=full_avg, confidence=confidence)


def _count_months(expenses: Iterable[ConvertedExpense]) -> int:
    return len({(expense.date.year, expense.date.month) for expense in expenses})


def _sum(expenses: Iterable[ConvertedExpense]) -> Decimal:
    total = ZERO
    for expense in expenses:
        total += expense.amount
    return total
