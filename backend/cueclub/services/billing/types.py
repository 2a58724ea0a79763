from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple
import uuid
from zoneinfo import ZoneInfo

FREE = 'free'
OCCUPIED = 'occupied'
PAUSED = 'paused'
STATUSES = (FREE, OCCUPIED, PAUSED)

HOURLY = 'hourly'
PER_MINUTE = 'per_minute'
PER_FRAME = 'per_frame'
BILLING_MODES = (HOURLY, PER_MINUTE, PER_FRAME)

RESULTS = ('win', 'loss', 'draw')
PAYMENT_METHODS = ('cash', 'upi', 'card')

ZERO = Decimal('0')


def to_decimal(value: Any, default: str = '0') -> Decimal:
    if value is None or value == '':
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f'not a monetary amount: {value!r}')


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or pass a datetime through) as aware UTC."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_hhmm(value: Any) -> time:
    if isinstance(value, time):
        return value
    hours, minutes = str(value).split(':', 1)
    return time(int(hours), int(minutes))


@dataclass(frozen=True)
class OrderItem:
    item_id: Any
    name: str
    unit_price: Decimal
    quantity: int = 1

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            'item_id': self.item_id,
            'name': self.name,
            'unit_price': str(self.unit_price),
            'quantity': self.quantity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OrderItem':
        quantity = int(data.get('quantity') or 1)
        if quantity < 1:
            raise ValueError('order item quantity must be at least 1')
        return cls(
            item_id=data.get('item_id', data.get('id')),
            name=data.get('name') or '',
            unit_price=to_decimal(data.get('unit_price', data.get('price'))),
            quantity=quantity,
        )


@dataclass(frozen=True)
class RatePlan:
    per_hour: Decimal = Decimal('200')
    per_minute: Decimal = Decimal('4')
    per_frame: Decimal = Decimal('50')
    peak_rate: Decimal = Decimal('300')
    off_peak_rate: Decimal = Decimal('150')
    peak_start: time = time(18, 0)
    peak_end: time = time(23, 0)
    default_billing_mode: str = HOURLY
    peak_pricing_enabled: bool = False
    # Club wall clock the peak window is read in
    time_zone: str = 'UTC'

    RATE_FIELDS = ('per_hour', 'per_minute', 'per_frame', 'peak_rate', 'off_peak_rate')

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RatePlan':
        if not data:
            return cls()
        base = cls()
        return cls(
            per_hour=to_decimal(data.get('per_hour'), str(base.per_hour)),
            per_minute=to_decimal(data.get('per_minute'), str(base.per_minute)),
            per_frame=to_decimal(data.get('per_frame'), str(base.per_frame)),
            peak_rate=to_decimal(data.get('peak_rate'), str(base.peak_rate)),
            off_peak_rate=to_decimal(data.get('off_peak_rate'), str(base.off_peak_rate)),
            peak_start=parse_hhmm(data.get('peak_start') or base.peak_start),
            peak_end=parse_hhmm(data.get('peak_end') or base.peak_end),
            default_billing_mode=data.get('default_billing_mode') or base.default_billing_mode,
            peak_pricing_enabled=bool(data.get('peak_pricing_enabled', False)),
            time_zone=data.get('time_zone') or base.time_zone,
        )


@dataclass(frozen=True)
class TableConfig:
    """Physical table row: configuration plus table-level live status."""
    id: Any
    table_number: int
    table_name: Optional[str] = None
    table_type: str = 'Snooker'
    status: str = FREE
    billing_mode: str = HOURLY
    use_global_pricing: bool = True
    custom_pricing: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TableConfig':
        return cls(
            id=data['id'],
            table_number=int(data.get('table_number') or 0),
            table_name=data.get('table_name'),
            table_type=data.get('table_type') or 'Snooker',
            status=data.get('status') or FREE,
            billing_mode=data.get('billing_mode') or HOURLY,
            use_global_pricing=data.get('use_global_pricing', True) is not False,
            custom_pricing=data.get('custom_pricing') or None,
        )


@dataclass(frozen=True)
class ClubSettings:
    is_open: bool = True
    gst_enabled: bool = False
    gst_rate: Decimal = Decimal('18')

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ClubSettings':
        data = data or {}
        return cls(
            is_open=data.get('is_open', True) is not False,
            gst_enabled=bool(data.get('gst_enabled', False)),
            gst_rate=to_decimal(data.get('gst_rate'), '18'),
        )


@dataclass(frozen=True)
class TableSession:
    """Merged view of a table row and its live session row."""
    id: Any
    table_number: int
    status: str = FREE
    players: Tuple[str, ...] = ()
    start_time: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    paused_ms: int = 0
    billing_mode: str = HOURLY
    frame_count: int = 0
    items: Tuple[OrderItem, ...] = ()
    total_bill: Decimal = ZERO

    @property
    def is_live(self) -> bool:
        return self.status in (OCCUPIED, PAUSED)

    def table_fields(self) -> Dict[str, Any]:
        return {'id': self.id, 'status': self.status, 'billing_mode': self.billing_mode}

    def session_fields(self) -> Dict[str, Any]:
        return {
            'table_id': self.id,
            'players': list(self.players),
            'start_time': format_ts(self.start_time),
            'paused_at': format_ts(self.paused_at),
            'paused_ms': self.paused_ms,
            'billing_mode': self.billing_mode,
            'frame_count': self.frame_count,
            'items': [item.to_dict() for item in self.items],
            'total_bill': str(self.total_bill),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.session_fields()
        data.pop('table_id')
        data.update(self.table_fields())
        data['table_number'] = self.table_number
        return data

    @classmethod
    def from_rows(cls, table_row: Dict[str, Any], session_row: Optional[Dict[str, Any]] = None) -> 'TableSession':
        status = table_row.get('status') or FREE
        billing_mode = table_row.get('billing_mode') or HOURLY
        if not session_row or status == FREE:
            return cls(id=table_row['id'], table_number=int(table_row.get('table_number') or 0),
                       status=FREE, billing_mode=billing_mode)
        return cls(
            id=table_row['id'],
            table_number=int(table_row.get('table_number') or 0),
            status=status,
            players=tuple(session_row.get('players') or ()),
            start_time=parse_ts(session_row.get('start_time')),
            paused_at=parse_ts(session_row.get('paused_at')),
            paused_ms=int(session_row.get('paused_ms') or 0),
            billing_mode=session_row.get('billing_mode') or billing_mode,
            frame_count=int(session_row.get('frame_count') or 0),
            items=tuple(OrderItem.from_dict(i) for i in (session_row.get('items') or ())),
            total_bill=to_decimal(session_row.get('total_bill')),
        )


def merge_tables(table_rows: Iterable[Dict[str, Any]], session_rows: Iterable[Dict[str, Any]]) -> List[TableSession]:
    """Join table rows with their live session rows by ``table_id``."""
    by_table = {row.get('table_id'): row for row in session_rows}
    merged = [TableSession.from_rows(row, by_table.get(row['id'])) for row in table_rows]
    return sorted(merged, key=lambda t: t.table_number)


@dataclass(frozen=True)
class PlayerResult:
    name: str
    result: str

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'result': self.result}


@dataclass(frozen=True)
class PaymentMeta:
    method: str = 'upi'
    split_count: int = 1
    qr_used: Optional[bool] = None

    @property
    def used_qr(self) -> bool:
        return self.method == 'upi' if self.qr_used is None else self.qr_used


@dataclass(frozen=True)
class BillingSummary:
    billing_mode: str
    elapsed_ms: int
    table_charge: Decimal
    items_total: Decimal
    gst_amount: Decimal = ZERO

    @property
    def subtotal(self) -> Decimal:
        return self.table_charge + self.items_total

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.gst_amount

    def per_person(self, split_count: int = 1) -> Decimal:
        if split_count < 1:
            raise ValueError('split_count must be at least 1')
        # Each person pays the ceiling share, as at the counter
        return (self.total / split_count).to_integral_value(rounding=ROUND_CEILING)


@dataclass(frozen=True)
class Checkout:
    """A session frozen at its end instant, waiting for payment."""
    session: TableSession
    results: Tuple[PlayerResult, ...]
    ended_at: datetime
    summary: BillingSummary


@dataclass(frozen=True)
class MatchRecord:
    table_number: int
    players: Tuple[PlayerResult, ...]
    session_start: Optional[datetime]
    session_end: datetime
    duration_ms: int
    billing_mode: str
    total_bill: Decimal
    payment: PaymentMeta
    gst_amount: Decimal = ZERO
    items: Tuple[OrderItem, ...] = ()
    local_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'local_id': self.local_id,
            'table_number': self.table_number,
            'players': [p.to_dict() for p in self.players],
            'session_start': format_ts(self.session_start),
            'session_end': format_ts(self.session_end),
            'duration_ms': self.duration_ms,
            'billing_mode': self.billing_mode,
            'total_bill': str(self.total_bill),
            'payment_method': self.payment.method,
            'split_count': self.payment.split_count,
            'qr_used': self.payment.used_qr,
            'gst_amount': str(self.gst_amount),
            'items': [item.to_dict() for item in self.items],
        }
