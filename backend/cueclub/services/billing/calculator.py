from dataclasses import replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from .clock import elapsed_ms
from .types import (
    FREE, HOURLY, PER_FRAME, PER_MINUTE, ZERO,
    BillingSummary, ClubSettings, OrderItem, RatePlan, TableConfig, TableSession, to_decimal,
)

MS_PER_HOUR = 3_600_000
MS_PER_MINUTE = 60_000
CENT = Decimal('0.01')


def _started_units(elapsed: int, unit_ms: int) -> int:
    """Number of started units; any partial unit counts as a whole one."""
    if elapsed < 0:
        raise ValueError('elapsed time cannot be negative')
    return -(-elapsed // unit_ms)


def hourly_charge(elapsed: int, per_hour: Decimal) -> Decimal:
    return _started_units(elapsed, MS_PER_HOUR) * per_hour


def per_minute_charge(elapsed: int, per_minute: Decimal) -> Decimal:
    return _started_units(elapsed, MS_PER_MINUTE) * per_minute


def per_frame_charge(frame_count: int, per_frame: Decimal) -> Decimal:
    return max(0, frame_count) * per_frame


def in_peak_window(plan: RatePlan, at: datetime) -> bool:
    """True when ``at``, read on the club's wall clock, falls in [peak_start, peak_end).

    Naive datetimes are taken as UTC. A window whose end is earlier than its
    start wraps past midnight.
    """
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    moment = at.astimezone(plan.zone).time()
    start, end = plan.peak_start, plan.peak_end
    if start == end:
        return False
    if start < end:
        return start <= moment < end
    return moment >= start or moment < end


def effective_hourly_rate(plan: RatePlan, at: Optional[datetime] = None) -> Decimal:
    """Hourly rate at the charge-calculation instant.

    Peak/off-peak rates only replace ``per_hour`` on plans that opt in.
    """
    if not plan.peak_pricing_enabled or at is None:
        return plan.per_hour
    return plan.peak_rate if in_peak_window(plan, at) else plan.off_peak_rate


def table_charge(mode: str, elapsed: int, frame_count: int, plan: RatePlan,
                 at: Optional[datetime] = None) -> Decimal:
    if mode == HOURLY:
        return hourly_charge(elapsed, effective_hourly_rate(plan, at))
    if mode == PER_MINUTE:
        return per_minute_charge(elapsed, plan.per_minute)
    if mode == PER_FRAME:
        return per_frame_charge(frame_count, plan.per_frame)
    raise ValueError(f'unknown billing mode: {mode!r}')


def items_total(items: Iterable[OrderItem]) -> Decimal:
    return sum((item.line_total for item in items), ZERO)


def resolve_rate_plan(club_plan: RatePlan, table: Optional[TableConfig]) -> RatePlan:
    """Club plan with a table's custom rates laid over it."""
    if table is None or table.use_global_pricing or not table.custom_pricing:
        return club_plan
    overrides = {
        name: to_decimal(table.custom_pricing[name])
        for name in RatePlan.RATE_FIELDS
        if table.custom_pricing.get(name) is not None
    }
    return replace(club_plan, **overrides)


def session_total(session: TableSession, plan: RatePlan, now: datetime) -> Decimal:
    """Table charge plus items; what ``total_bill`` holds after a transition."""
    if session.status == FREE:
        return ZERO
    charge = table_charge(session.billing_mode, elapsed_ms(session, now), session.frame_count, plan, at=now)
    return charge + items_total(session.items)


def billing_summary(session: TableSession, plan: RatePlan, settings: Optional[ClubSettings],
                    now: datetime) -> BillingSummary:
    elapsed = elapsed_ms(session, now)
    charge = table_charge(session.billing_mode, elapsed, session.frame_count, plan, at=now)
    items = items_total(session.items)
    gst = ZERO
    if settings is not None and settings.gst_enabled:
        gst = ((charge + items) * settings.gst_rate / 100).quantize(CENT, rounding=ROUND_HALF_UP)
    return BillingSummary(
        billing_mode=session.billing_mode,
        elapsed_ms=elapsed,
        table_charge=charge,
        items_total=items,
        gst_amount=gst,
    )
