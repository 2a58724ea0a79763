"""Table-session state machine.

States are ``free``, ``occupied`` and ``paused``. Every transition returns a
new :class:`TableSession` with ``total_bill`` recomputed for the instant of
the transition; nothing here talks to a store.

    free --start--> occupied --pause--> paused --resume--> occupied
    occupied/paused --end_session--> Checkout --settle--> (MatchRecord, free)
"""

from dataclasses import replace
from datetime import datetime
from typing import Mapping, Optional, Tuple

from .calculator import billing_summary, session_total
from .clock import elapsed_ms, pause_duration_ms
from .types import (
    BILLING_MODES, FREE, OCCUPIED, PAUSED, PAYMENT_METHODS, RESULTS, ZERO,
    Checkout, ClubSettings, MatchRecord, OrderItem, PaymentMeta, PlayerResult,
    RatePlan, TableConfig, TableSession,
)


class SessionError(ValueError):
    """A transition the current session state does not allow."""


def _recompute(session: TableSession, plan: RatePlan, now: datetime) -> TableSession:
    return replace(session, total_bill=session_total(session, plan, now))


def _require_live(session: TableSession, action: str) -> None:
    if not session.is_live:
        raise SessionError(f'Table {session.table_number} has no running session to {action}')


def start(session: TableSession, plan: RatePlan, now: datetime,
          billing_mode: Optional[str] = None, table: Optional[TableConfig] = None,
          settings: Optional[ClubSettings] = None) -> TableSession:
    if session.status != FREE:
        raise SessionError(f'Table {session.table_number} is already {session.status}')
    if settings is not None and not settings.is_open:
        raise SessionError('Club is currently closed. Cannot start new sessions.')
    mode = billing_mode or (table.billing_mode if table is not None else None) or plan.default_billing_mode
    if mode not in BILLING_MODES:
        raise SessionError(f'Unknown billing mode: {mode}')
    started = replace(
        session,
        status=OCCUPIED,
        start_time=now,
        paused_at=None,
        paused_ms=0,
        frame_count=0,
        billing_mode=mode,
    )
    return _recompute(started, plan, now)


def pause(session: TableSession, plan: RatePlan, now: datetime) -> TableSession:
    if session.status != OCCUPIED:
        raise SessionError(f'Only a running table can be paused (table {session.table_number} is {session.status})')
    return _recompute(replace(session, status=PAUSED, paused_at=now), plan, now)


def resume(session: TableSession, plan: RatePlan, now: datetime) -> TableSession:
    if session.status != PAUSED:
        raise SessionError(f'Only a paused table can be resumed (table {session.table_number} is {session.status})')
    # Accumulate only the length of this pause, not the age of the session
    resumed = replace(
        session,
        status=OCCUPIED,
        paused_ms=session.paused_ms + pause_duration_ms(session, now),
        paused_at=None,
    )
    return _recompute(resumed, plan, now)


def add_frame(session: TableSession, plan: RatePlan, now: datetime) -> TableSession:
    _require_live(session, 'count frames on')
    return _recompute(replace(session, frame_count=session.frame_count + 1), plan, now)


def remove_frame(session: TableSession, plan: RatePlan, now: datetime) -> TableSession:
    _require_live(session, 'count frames on')
    return _recompute(replace(session, frame_count=max(0, session.frame_count - 1)), plan, now)


def add_order_item(session: TableSession, item: OrderItem, plan: RatePlan, now: datetime) -> TableSession:
    _require_live(session, 'add items to')
    items = list(session.items)
    for idx, existing in enumerate(items):
        if existing.item_id == item.item_id:
            items[idx] = replace(existing, quantity=existing.quantity + 1)
            break
    else:
        items.append(replace(item, quantity=1))
    return _recompute(replace(session, items=tuple(items)), plan, now)


def add_player(session: TableSession, name: str, plan: RatePlan, now: datetime) -> TableSession:
    _require_live(session, 'add players to')
    name = (name or '').strip()
    if not name:
        raise SessionError('Player name is required')
    if name in session.players:
        return session
    return _recompute(replace(session, players=session.players + (name,)), plan, now)


def remove_player(session: TableSession, name: str, plan: RatePlan, now: datetime) -> TableSession:
    _require_live(session, 'remove players from')
    if name not in session.players:
        return session
    players = tuple(p for p in session.players if p != name)
    return _recompute(replace(session, players=players), plan, now)


def end_session(session: TableSession, results: Mapping[str, str], plan: RatePlan, now: datetime,
                settings: Optional[ClubSettings] = None, allow_empty: bool = False) -> Checkout:
    """Freeze a running session for payment.

    Every player present needs a result; a table with no players can only be
    closed through the explicit ``allow_empty`` (no winner / draw) path.
    """
    _require_live(session, 'end')
    if not session.players and not allow_empty:
        raise SessionError('Add a player or confirm ending the session with no winner')
    unknown = sorted(set(results) - set(session.players))
    if unknown:
        raise SessionError(f'Not playing on table {session.table_number}: {", ".join(unknown)}')
    missing = [p for p in session.players if p not in results]
    if missing:
        raise SessionError(f'Select win, loss or draw for: {", ".join(missing)}')
    invalid = sorted(p for p, r in results.items() if r not in RESULTS)
    if invalid:
        raise SessionError(f'Result must be one of {", ".join(RESULTS)} (got it wrong for {", ".join(invalid)})')
    frozen = _recompute(session, plan, now)
    return Checkout(
        session=frozen,
        results=tuple(PlayerResult(p, results[p]) for p in session.players),
        ended_at=now,
        summary=billing_summary(frozen, plan, settings, now),
    )


def reset(session: TableSession) -> TableSession:
    """Recycle the table entity for its next session."""
    return replace(
        session,
        status=FREE,
        players=(),
        start_time=None,
        paused_at=None,
        paused_ms=0,
        frame_count=0,
        items=(),
        total_bill=ZERO,
    )


def settle(checkout: Checkout, payment: Optional[PaymentMeta] = None) -> Tuple[MatchRecord, TableSession]:
    """Record the payment: one immutable MatchRecord plus the freed table."""
    payment = payment or PaymentMeta()
    if payment.method not in PAYMENT_METHODS:
        raise SessionError(f'Unknown payment method: {payment.method}')
    if payment.split_count < 1:
        raise SessionError('Split count must be at least 1')
    session = checkout.session
    record = MatchRecord(
        table_number=session.table_number,
        players=checkout.results,
        session_start=session.start_time,
        session_end=checkout.ended_at,
        duration_ms=elapsed_ms(session, checkout.ended_at),
        billing_mode=session.billing_mode,
        total_bill=checkout.summary.total,
        payment=payment,
        gst_amount=checkout.summary.gst_amount,
        items=session.items,
    )
    return record, reset(session)
