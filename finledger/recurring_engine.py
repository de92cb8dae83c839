from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

import structlog
from sqlalchemy.engine import Connection, Engine

from finledger.dates import clamp_day, last_day_of_month
from finledger.db import transaction_scope
from finledger.errors import InvalidArgument, NotFound
from finledger.ledger import BalanceLedger, new_id
from finledger.models import (
    ZERO,
    Frequency,
    RecurringSchedule,
    ScheduleKind,
    Transaction,
    coerce_decimal,
    utcnow,
)
from finledger.stores import AccountStore, MovementStore, ScheduleStore

logger = structlog.get_logger(__name__)

SCHEDULE_EDITABLE = {
    "frequency",
    "day_of_week",
    "day_of_month",
    "account_id",
    "to_account_id",
    "category_id",
    "amount",
    "amount_to",
    "description",
    "is_active",
    "remaining_occurrences",
    "end_date",
}

SCHEDULE_REQUIRED = ("frequency", "account_id", "amount", "is_active")


@dataclass
class ProcessingReport:
    run_date: date
    fired: list[str] = field(default_factory=list)
    deactivated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def should_fire_today(schedule: RecurringSchedule, today: date) -> bool:
    if schedule.frequency == Frequency.DAILY:
        return True
    if schedule.frequency == Frequency.WEEKLY:
        return today.weekday() == schedule.day_of_week
    if schedule.frequency == Frequency.MONTHLY:
        if schedule.day_of_month is None:
            return False
        # a day_of_month past the end of a short month fires on its last day
        target = min(schedule.day_of_month, last_day_of_month(today))
        return today.day == target
    return False


def is_expired(schedule: RecurringSchedule, today: date) -> bool:
    if schedule.end_date is not None and today > schedule.end_date:
        return True
    return schedule.remaining_occurrences is not None and schedule.remaining_occurrences <= 0


def validate_schedule(schedule: RecurringSchedule) -> RecurringSchedule:
    """Check a schedule's shape and drop fields that do not apply to it."""
    kind = ScheduleKind.validate(schedule.kind)
    frequency = Frequency.validate(schedule.frequency)

    day_of_week = None
    day_of_month = None
    if frequency == Frequency.WEEKLY:
        if schedule.day_of_week is None or not 0 <= schedule.day_of_week <= 6:
            raise InvalidArgument("day_of_week must be between 0-6 for weekly frequency.")
        day_of_week = schedule.day_of_week
    elif frequency == Frequency.MONTHLY:
        if schedule.day_of_month is None or not 1 <= schedule.day_of_month <= 31:
            raise InvalidArgument("day_of_month must be between 1-31 for monthly frequency.")
        day_of_month = schedule.day_of_month

    amount = coerce_decimal(schedule.amount)
    if amount == ZERO:
        raise InvalidArgument("Amount cannot be zero.")
    amount_to = coerce_decimal(schedule.amount_to) if schedule.amount_to is not None else None

    to_account_id = schedule.to_account_id
    category_id = schedule.category_id
    if kind == ScheduleKind.TRANSACTION:
        if not category_id:
            raise InvalidArgument("category_id is required for transaction type.")
        to_account_id = None
        amount_to = None
    else:
        if not to_account_id:
            raise InvalidArgument("to_account_id is required for transfer type.")
        if to_account_id == schedule.account_id:
            raise InvalidArgument("Cannot transfer to same account.")
        if amount_to is not None and amount_to <= ZERO:
            raise InvalidArgument("amount_to must be greater than zero.")

    if schedule.remaining_occurrences is not None and schedule.remaining_occurrences < 0:
        raise InvalidArgument("remaining_occurrences cannot be negative.")

    return replace(
        schedule,
        kind=kind,
        frequency=frequency,
        day_of_week=day_of_week,
        day_of_month=day_of_month,
        amount=amount,
        amount_to=amount_to,
        to_account_id=to_account_id,
        category_id=category_id,
    )


class RecurringScheduleEngine:
    """Materializes due recurring schedules through the balance ledger.

    ``process_due`` is meant to be triggered once per calendar day by an
    external caller. Each schedule fires inside its own datastore transaction
    together with the update of its ``last_processed_date``, so re-running on
    the same day never fires a schedule twice and a failure in one schedule
    leaves the others untouched.
    """

    def __init__(
        self,
        engine: Engine,
        ledger: BalanceLedger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._engine = engine
        self._ledger = ledger
        self._clock = clock

    def process_due(self, today: date) -> ProcessingReport:
        report = ProcessingReport(run_date=today)
        with transaction_scope(self._engine) as conn:
            schedule_ids = [schedule.id for schedule in ScheduleStore(conn).find_active()]

        for schedule_id in schedule_ids:
            try:
                with transaction_scope(self._engine) as conn:
                    outcome = self._process_schedule(conn, schedule_id, today)
            except Exception as exc:
                logger.exception("recurring_schedule_failed", schedule_id=schedule_id, run_date=today.isoformat())
                report.failed[schedule_id] = str(exc)
                continue
            getattr(report, outcome).append(schedule_id)

        logger.info(
            "recurring_schedules_processed",
            run_date=today.isoformat(),
            fired=len(report.fired),
            deactivated=len(report.deactivated),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    def _process_schedule(self, conn: Connection, schedule_id: str, today: date) -> str:
        schedules = ScheduleStore(conn)
        # re-read inside the transaction so a concurrent run's update is honored
        schedule = schedules.get(schedule_id)
        if not schedule.is_active:
            return "skipped"

        if is_expired(schedule, today):
            schedules.update(schedule.id, {"is_active": False})
            logger.info("recurring_schedule_retired", schedule_id=schedule.id, run_date=today.isoformat())
            return "deactivated"

        if not should_fire_today(schedule, today):
            return "skipped"
        if schedule.last_processed_date == today:
            return "skipped"

        session = self._ledger.session(conn)
        if schedule.kind == ScheduleKind.TRANSFER:
            if not schedule.to_account_id:
                raise InvalidArgument("to_account_id missing for transfer schedule.")
            amount_to = schedule.amount_to if schedule.amount_to is not None else schedule.amount
            session.create_transfer(
                schedule.account_id,
                schedule.to_account_id,
                abs(schedule.amount),
                abs(amount_to),
                today,
                description=schedule.description,
            )
        else:
            session.record_transaction(
                schedule.account_id,
                schedule.amount,
                today,
                category_id=schedule.category_id,
                description=schedule.description,
            )

        changes: dict[str, Any] = {"last_processed_date": today}
        if schedule.remaining_occurrences is not None:
            remaining = schedule.remaining_occurrences - 1
            changes["remaining_occurrences"] = remaining
            if remaining <= 0:
                changes["is_active"] = False
        schedules.update(schedule.id, changes)
        logger.info(
            "recurring_schedule_fired",
            schedule_id=schedule.id,
            kind=schedule.kind,
            run_date=today.isoformat(),
            remaining_occurrences=changes.get("remaining_occurrences"),
        )
        return "fired"

    def clone_recurring_transactions(self, today: date) -> list[Transaction]:
        """Copy transactions flagged ``is_recurring`` into the current month.

        A template is skipped when a transaction with the same account, amount
        and description already exists in ``today``'s month.
        """
        with transaction_scope(self._engine) as conn:
            templates = MovementStore(conn).find_recurring()

        created: list[Transaction] = []
        for template in templates:
            try:
                with transaction_scope(self._engine) as conn:
                    session = self._ledger.session(conn)
                    existing = session.movements.find_by_account_and_date_pattern(
                        template.account_id, template.amount, template.description, today
                    )
                    if existing is not None:
                        continue
                    clone = session.record_transaction(
                        template.account_id,
                        template.amount,
                        clamp_day(today.year, today.month, template.date.day),
                        category_id=template.category_id,
                        description=template.description,
                        is_recurring=True,
                    )
            except Exception:
                logger.exception("recurring_clone_failed", transaction_id=template.id)
                continue
            logger.info("recurring_transaction_cloned", template_id=template.id, transaction_id=clone.id)
            created.append(clone)
        return created

    def create_schedule(
        self,
        kind: str,
        frequency: str,
        account_id: str,
        amount: Decimal,
        day_of_week: Optional[int] = None,
        day_of_month: Optional[int] = None,
        to_account_id: Optional[str] = None,
        category_id: Optional[str] = None,
        amount_to: Optional[Decimal] = None,
        description: Optional[str] = None,
        remaining_occurrences: Optional[int] = None,
        end_date: Optional[date] = None,
    ) -> RecurringSchedule:
        schedule = validate_schedule(
            RecurringSchedule(
                id=new_id(),
                kind=kind,
                frequency=frequency,
                account_id=account_id,
                amount=amount,
                day_of_week=day_of_week,
                day_of_month=day_of_month,
                to_account_id=to_account_id,
                category_id=category_id,
                amount_to=amount_to,
                description=description,
                is_active=True,
                created_at=self._clock(),
                remaining_occurrences=remaining_occurrences,
                end_date=end_date,
            )
        )
        with transaction_scope(self._engine) as conn:
            _require_accounts(AccountStore(conn), schedule)
            ScheduleStore(conn).create(schedule)
        logger.info("recurring_schedule_created", schedule_id=schedule.id, kind=schedule.kind, frequency=schedule.frequency)
        return schedule

    def update_schedule(self, schedule_id: str, changes: Mapping[str, Any]) -> RecurringSchedule:
        unknown = set(changes) - SCHEDULE_EDITABLE
        if unknown:
            raise InvalidArgument(f"Cannot update fields: {', '.join(sorted(unknown))}.")
        empty = [name for name in SCHEDULE_REQUIRED if name in changes and changes[name] is None]
        if empty:
            raise InvalidArgument(f"Fields cannot be empty: {', '.join(empty)}.")
        with transaction_scope(self._engine) as conn:
            schedules = ScheduleStore(conn)
            existing = schedules.get(schedule_id)
            merged = validate_schedule(replace(existing, **changes))
            _require_accounts(AccountStore(conn), merged)
            values = {
                name: getattr(merged, name)
                for name in SCHEDULE_EDITABLE
                if getattr(merged, name) != getattr(existing, name)
            }
            updated = schedules.update(schedule_id, values)
        logger.info("recurring_schedule_updated", schedule_id=schedule_id, fields=sorted(values))
        return updated

    def delete_schedule(self, schedule_id: str) -> None:
        with transaction_scope(self._engine) as conn:
            ScheduleStore(conn).delete(schedule_id)
        logger.info("recurring_schedule_deleted", schedule_id=schedule_id)

    def get_schedule(self, schedule_id: str) -> RecurringSchedule:
        with transaction_scope(self._engine) as conn:
            return ScheduleStore(conn).get(schedule_id)

    def list_schedules(self) -> list[RecurringSchedule]:
        with transaction_scope(self._engine) as conn:
            return ScheduleStore(conn).list()


def _require_accounts(accounts: AccountStore, schedule: RecurringSchedule) -> None:
    if accounts.find(schedule.account_id) is None:
        raise NotFound("Account not found.")
    if schedule.to_account_id and accounts.find(schedule.to_account_id) is None:
        raise NotFound("To account not found.")
