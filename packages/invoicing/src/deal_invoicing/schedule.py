"""Payment schedule calculation.

A proforma is paid either in full shortly after issue, or as a deposit now
plus a balance due one month before the deal's close date. The decision
depends only on how far away the close date is from the issue date.
"""

import calendar
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from deal_invoicing.config.settings import Settings
from deal_invoicing.models import FollowUpTask

CENT = Decimal("0.01")


class ScheduleType(str, Enum):
    """Number of installments in a schedule."""

    SINGLE = "single"
    SPLIT = "split"


@dataclass(frozen=True)
class ScheduleConfig:
    """Constants of the schedule rule."""

    payment_terms_days: int = 3
    split_threshold_days: int = 30
    deposit_ratio: Decimal = Decimal("0.5")
    balance_months_before_close: int = 1

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScheduleConfig":
        return cls(
            payment_terms_days=settings.payment_terms_days,
            split_threshold_days=settings.split_threshold_days,
            deposit_ratio=Decimal(settings.deposit_percent) / Decimal("100"),
        )


@dataclass(frozen=True)
class Installment:
    """One payment of a schedule."""

    label: str
    due_date: date
    amount: Decimal


@dataclass(frozen=True)
class PaymentSchedule:
    """Installment plan for a document."""

    type: ScheduleType
    total: Decimal
    currency: str
    installments: tuple[Installment, ...]
    days_to_close: int | None = None

    @property
    def deposit(self) -> Installment:
        return self.installments[0]

    @property
    def balance(self) -> Installment | None:
        return self.installments[1] if len(self.installments) > 1 else None

    @property
    def final_due_date(self) -> date:
        return self.installments[-1].due_date

    def describe(self) -> str:
        """Human-readable schedule printed on the document."""
        if self.type == ScheduleType.SINGLE:
            item = self.installments[0]
            return (
                f"Payment schedule: 100% ({item.amount:.2f} {self.currency}) "
                f"due by {item.due_date.isoformat()}."
            )
        deposit = self.installments[0]
        balance = self.installments[1]
        return (
            f"Payment schedule: deposit {deposit.amount:.2f} {self.currency} "
            f"due by {deposit.due_date.isoformat()}; balance {balance.amount:.2f} "
            f"{self.currency} due by {balance.due_date.isoformat()}."
        )


def subtract_months(value: date, months: int) -> date:
    """Same day ``months`` earlier, clamped to the end of shorter months."""
    month_index = value.year * 12 + (value.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(value.day, last_day))


def days_between(start: date | datetime, end: date | datetime) -> int:
    """Calendar days from ``start`` to ``end``, partial days rounded up."""
    if isinstance(start, datetime) or isinstance(end, datetime):
        start_dt = start if isinstance(start, datetime) else datetime.combine(start, datetime.min.time())
        end_dt = end if isinstance(end, datetime) else datetime.combine(end, datetime.min.time())
        if (start_dt.tzinfo is None) != (end_dt.tzinfo is None):
            start_dt = start_dt.replace(tzinfo=None)
            end_dt = end_dt.replace(tzinfo=None)
        return math.ceil((end_dt - start_dt).total_seconds() / 86400)
    return (end - start).days


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def _single(total: Decimal, currency: str, due: date, days: int | None) -> PaymentSchedule:
    return PaymentSchedule(
        type=ScheduleType.SINGLE,
        total=total,
        currency=currency,
        installments=(Installment("full", due, total),),
        days_to_close=days,
    )


def compute_schedule(
    issue_date: date | datetime,
    total_amount: Decimal,
    currency: str,
    close_date: date | datetime | None,
    config: ScheduleConfig | None = None,
) -> PaymentSchedule:
    """Derive the payment schedule of a document.

    Args:
        issue_date: The date the document was (or will be) issued. Pass the
            real issue date, not today, when recomputing for an existing
            document.
        total_amount: Document total; quantized to cents.
        currency: Document currency.
        close_date: Target close date of the deal, if any.
        config: Rule constants. Defaults to :class:`ScheduleConfig`.

    Returns:
        A ``single`` schedule when there is no close date or it is less than
        ``split_threshold_days`` away, otherwise a ``split`` schedule whose
        installments sum exactly to the total.
    """
    config = config or ScheduleConfig()
    total = Decimal(total_amount).quantize(CENT, rounding=ROUND_HALF_UP)
    issued = _as_date(issue_date)
    first_due = issued + timedelta(days=config.payment_terms_days)

    if close_date is None:
        return _single(total, currency, first_due, None)

    days = days_between(issue_date, close_date)
    if days < config.split_threshold_days:
        return _single(total, currency, first_due, days)

    deposit = (total * config.deposit_ratio).quantize(CENT, rounding=ROUND_HALF_UP)
    balance = total - deposit

    balance_due = subtract_months(_as_date(close_date), config.balance_months_before_close)
    if balance_due <= first_due:
        balance_due = first_due + timedelta(days=1)

    return PaymentSchedule(
        type=ScheduleType.SPLIT,
        total=total,
        currency=currency,
        installments=(
            Installment("deposit", first_due, deposit),
            Installment("balance", balance_due, balance),
        ),
        days_to_close=days,
    )


def follow_up_tasks(
    schedule: PaymentSchedule, document_number: str, deal_id: int | None = None
) -> list[FollowUpTask]:
    """Reminder tasks for each installment, referencing the document number."""
    tasks: list[FollowUpTask] = []
    for installment in schedule.installments:
        tasks.append(
            FollowUpTask(
                subject=f"Check {installment.label} payment for {document_number}",
                due_date=installment.due_date,
                note=(
                    f"Proforma {document_number}: expect {installment.amount:.2f} "
                    f"{schedule.currency} by {installment.due_date.isoformat()}."
                ),
                deal_id=deal_id,
            )
        )
    return tasks
