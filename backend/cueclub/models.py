from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
import json
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cueclub import db
from cueclub.services.billing.types import BILLING_MODES, PAYMENT_METHODS, STATUSES, parse_hhmm, parse_ts


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _load(kind, value, name):
    """Coerce one incoming JSON value to its column type; ValueError on bad input."""
    if value is None:
        return None
    try:
        if kind == 'str':
            return str(value)
        if kind == 'int':
            if isinstance(value, bool):
                raise ValueError
            return int(value)
        if kind == 'decimal':
            return Decimal(str(value))
        if kind == 'bool':
            if not isinstance(value, bool):
                raise ValueError
            return value
        if kind == 'datetime':
            # Stored as naive UTC
            return parse_ts(value).astimezone(timezone.utc).replace(tzinfo=None)
        if kind == 'hhmm':
            return parse_hhmm(value).strftime('%H:%M')
        if kind == 'json':
            return json.dumps(value)
        if kind == 'tz':
            return ZoneInfo(str(value)).key
    except (ValueError, TypeError, InvalidOperation, ZoneInfoNotFoundError):
        raise ValueError(f'{name}: invalid {kind} value {value!r}')
    raise ValueError(f'{name}: unknown field kind {kind}')


def _dump(kind, value):
    if value is None:
        return None
    if kind == 'decimal':
        return str(value)
    if kind == 'datetime':
        return value.replace(tzinfo=timezone.utc).isoformat()
    if kind == 'json':
        return json.loads(value)
    return value


class ClubRow:
    """Shared behaviour of every club-scoped collection row.

    FIELDS maps each writable attribute to its JSON kind; ``id`` and
    ``club_id`` are never writable from a payload.
    """
    KEY = 'id'
    FIELDS = {}
    REQUIRED = ()
    CHOICES = {}

    @classmethod
    def scoped(cls, club_id):
        return cls.query.filter_by(club_id=club_id)

    @classmethod
    def find(cls, club_id, key):
        return cls.scoped(club_id).filter(getattr(cls, cls.KEY) == key).first()

    @classmethod
    def create(cls, club_id, data):
        missing = [f for f in cls.REQUIRED if data.get(f) in (None, '')]
        if missing:
            raise ValueError(f'missing required fields: {", ".join(missing)}')
        row = cls(club_id=club_id)
        row.apply(data)
        return row

    def apply(self, data):
        for name, kind in self.FIELDS.items():
            if name not in data:
                continue
            value = _load(kind, data[name], name)
            allowed = self.CHOICES.get(name)
            if allowed and value is not None and value not in allowed:
                raise ValueError(f'{name}: must be one of {", ".join(allowed)}')
            setattr(self, name, value)
        return self

    def to_dict(self):
        data = {'id': self.id, 'club_id': self.club_id}
        for name, kind in self.FIELDS.items():
            data[name] = _dump(kind, getattr(self, name))
        return data


class Club(ClubRow, db.Model):
    __tablename__ = 'club'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    settings = db.Column(db.Text, nullable=True)  # JSON: is_open, gst_enabled, gst_rate
    created_at = db.Column(db.DateTime, default=_utcnow)

    FIELDS = {'name': 'str', 'settings': 'json'}
    REQUIRED = ('name',)

    @classmethod
    def scoped(cls, club_id):
        return cls.query.filter_by(id=club_id)

    @classmethod
    def create(cls, club_id, data):
        raise ValueError('clubs are provisioned by an administrator, not through the club API')

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'settings': _dump('json', self.settings) or {}}


class TablePricing(ClubRow, db.Model):
    __tablename__ = 'table_pricing'
    id = db.Column(db.Integer, primary_key=True)
    club_id = db.Column(db.Integer, db.ForeignKey('club.id'), nullable=False, index=True)
    per_hour = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('200'))
    per_minute = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('4'))
    per_frame = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('50'))
    peak_rate = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('300'))
    off_peak_rate = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('150'))
    peak_start = db.Column(db.String(5), nullable=False, default='18:00')
    peak_end = db.Column(db.String(5), nullable=False, default='23:00')
    default_billing_mode = db.Column(db.String(16), nullable=False, default='hourly')
    peak_pricing_enabled = db.Column(db.Boolean, nullable=False, default=False)
    time_zone = db.Column(db.String(64), nullable=False, default='UTC')

    FIELDS = {
        'per_hour': 'decimal', 'per_minute': 'decimal', 'per_frame': 'decimal',
        'peak_rate': 'decimal', 'off_peak_rate': 'decimal',
        'peak_start': 'hhmm', 'peak_end': 'hhmm',
        'default_billing_mode': 'str', 'peak_pricing_enabled': 'bool', 'time_zone': 'tz',
    }
    CHOICES = {'default_billing_mode': BILLING_MODES}


class PoolTable(ClubRow, db.Model):
    __tablename__ = 'pool_table'
    __table_args__ = (db.UniqueConstraint('club_id', 'table_number', name='uq_pool_table_club_number'),)
    id = db.Column(db.Integer, primary_key=True)
    club_id = db.Column(db.Integer, db.ForeignKey('club.id'), nullable=False, index=True)
    table_number = db.Column(db.Integer, nullable=False)
    table_name = db.Column(db.String(64), nullable=True)
    table_type = db.Column(db.String(16), nullable=False, default='Snooker')
    status = db.Column(db.String(16), nullable=False, default='free')
    billing_mode = db.Column(db.String(16), nullable=False, default='hourly')
    use_global_pricing = db.Column(db.Boolean, nullable=False, default=True)
    custom_pricing = db.Column(db.Text, nullable=True)  # JSON rate overrides

    FIELDS = {
        'table_number': 'int', 'table_name': 'str', 'table_type': 'str', 'status': 'str',
        'billing_mode': 'str', 'use_global_pricing': 'bool', 'custom_pricing': 'json',
    }
    REQUIRED = ('table_number',)
    CHOICES = {
        'table_type': ('Snooker', 'Pool', '8-Ball'),
        'status': STATUSES,
        'billing_mode': BILLING_MODES,
    }


class LiveSession(ClubRow, db.Model):
    """Payload of a running session; one row per occupied table, keyed by table."""
    __tablename__ = 'live_session'
    id = db.Column(db.Integer, primary_key=True)
    club_id = db.Column(db.Integer, db.ForeignKey('club.id'), nullable=False, index=True)
    table_id = db.Column(db.Integer, db.ForeignKey('pool_table.id'), nullable=False, unique=True)
    players = db.Column(db.Text, nullable=True)  # JSON list of names
    start_time = db.Column(db.DateTime, nullable=True)
    paused_at = db.Column(db.DateTime, nullable=True)
    paused_ms = db.Column(db.BigInteger, nullable=False, default=0)
    billing_mode = db.Column(db.String(16), nullable=False, default='hourly')
    frame_count = db.Column(db.Integer, nullable=False, default=0)
    items = db.Column(db.Text, nullable=True)  # JSON list of order items
    total_bill = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0'))
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    KEY = 'table_id'
    FIELDS = {
        'players': 'json', 'start_time': 'datetime', 'paused_at': 'datetime', 'paused_ms': 'int',
        'billing_mode': 'str', 'frame_count': 'int', 'items': 'json', 'total_bill': 'decimal',
    }
    CHOICES = {'billing_mode': BILLING_MODES}

    @classmethod
    def create(cls, club_id, data):
        row = super().create(club_id, data)
        row.table_id = _load('int', data.get('table_id'), 'table_id')
        if row.table_id is None:
            raise ValueError('missing required fields: table_id')
        return row

    def to_dict(self):
        data = super().to_dict()
        data['table_id'] = self.table_id
        data['players'] = data['players'] or []
        data['items'] = data['items'] or []
        return data


class MatchHistory(ClubRow, db.Model):
    __tablename__ = 'match_history'
    id = db.Column(db.Integer, primary_key=True)
    club_id = db.Column(db.Integer, db.ForeignKey('club.id'), nullable=False, index=True)
    # Client-generated; a replayed payment insert collides here
    local_id = db.Column(db.String(32), nullable=False, unique=True)
    table_number = db.Column(db.Integer, nullable=False)
    players = db.Column(db.Text, nullable=True)  # JSON list of {name, result}
    session_start = db.Column(db.DateTime, nullable=True)
    session_end = db.Column(db.DateTime, nullable=False)
    duration_ms = db.Column(db.BigInteger, nullable=False, default=0)
    billing_mode = db.Column(db.String(16), nullable=False)
    total_bill = db.Column(db.Numeric(10, 2), nullable=False)
    payment_method = db.Column(db.String(8), nullable=False, default='upi')
    split_count = db.Column(db.Integer, nullable=False, default=1)
    qr_used = db.Column(db.Boolean, nullable=False, default=False)
    gst_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0'))
    items = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=_utcnow)

    FIELDS = {
        'local_id': 'str', 'table_number': 'int', 'players': 'json',
        'session_start': 'datetime', 'session_end': 'datetime', 'duration_ms': 'int',
        'billing_mode': 'str', 'total_bill': 'decimal', 'payment_method': 'str',
        'split_count': 'int', 'qr_used': 'bool', 'gst_amount': 'decimal', 'items': 'json',
    }
    REQUIRED = ('local_id', 'table_number', 'session_end', 'billing_mode', 'total_bill')
    CHOICES = {'billing_mode': BILLING_MODES, 'payment_method': PAYMENT_METHODS}


class Member(ClubRow, db.Model):
    __tablename__ = 'member'
    id = db.Column(db.Integer, primary_key=True)
    club_id = db.Column(db.Integer, db.ForeignKey('club.id'), nullable=False, index=True)
    name = db.Column(db.String(64), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    wins = db.Column(db.Integer, nullable=False, default=0)
    losses = db.Column(db.Integer, nullable=False, default=0)
    games_played = db.Column(db.Integer, nullable=False, default=0)
    last_visit = db.Column(db.DateTime, nullable=True)

    FIELDS = {
        'name': 'str', 'phone': 'str', 'wins': 'int', 'losses': 'int',
        'games_played': 'int', 'last_visit': 'datetime',
    }
    REQUIRED = ('name',)


class Booking(ClubRow, db.Model):
    __tablename__ = 'booking'
    id = db.Column(db.Integer, primary_key=True)
    club_id = db.Column(db.Integer, db.ForeignKey('club.id'), nullable=False, index=True)
    table_id = db.Column(db.Integer, db.ForeignKey('pool_table.id'), nullable=True)
    customer_name = db.Column(db.String(64), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    booking_time = db.Column(db.DateTime, nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False, default=60)
    status = db.Column(db.String(16), nullable=False, default='confirmed')

    FIELDS = {
        'table_id': 'int', 'customer_name': 'str', 'phone': 'str',
        'booking_time': 'datetime', 'duration_minutes': 'int', 'status': 'str',
    }
    REQUIRED = ('customer_name', 'booking_time')
    CHOICES = {'status': ('confirmed', 'cancelled', 'completed')}


class Tournament(ClubRow, db.Model):
    __tablename__ = 'tournament'
    id = db.Column(db.Integer, primary_key=True)
    club_id = db.Column(db.Integer, db.ForeignKey('club.id'), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    start_date = db.Column(db.DateTime, nullable=True)
    entry_fee = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0'))
    prize_pool = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0'))
    max_players = db.Column(db.Integer, nullable=True)
    players = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default='upcoming')

    FIELDS = {
        'name': 'str', 'start_date': 'datetime', 'entry_fee': 'decimal', 'prize_pool': 'decimal',
        'max_players': 'int', 'players': 'json', 'status': 'str',
    }
    REQUIRED = ('name',)
    CHOICES = {'status': ('upcoming', 'ongoing', 'completed')}


class InventoryItem(ClubRow, db.Model):
    __tablename__ = 'inventory_item'
    id = db.Column(db.Integer, primary_key=True)
    club_id = db.Column(db.Integer, db.ForeignKey('club.id'), nullable=False, index=True)
    name = db.Column(db.String(64), nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)
    category = db.Column(db.String(32), nullable=True)

    FIELDS = {'name': 'str', 'price': 'decimal', 'stock': 'int', 'category': 'str'}
    REQUIRED = ('name', 'price')


COLLECTIONS = {
    'members': Member,
    'tables': PoolTable,
    'sessions': LiveSession,
    'match_history': MatchHistory,
    'bookings': Booking,
    'tournaments': Tournament,
    'inventory': InventoryItem,
    'rate_plans': TablePricing,
    'clubs': Club,
}
