from flask import Blueprint, jsonify, request, current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.exceptions import NotFound

from cueclub import db, socketio
from cueclub.models import COLLECTIONS, Club, LiveSession, PoolTable, TablePricing
from cueclub.services.billing.calculator import resolve_rate_plan, session_total
from cueclub.services.billing.clock import elapsed_ms, format_duration, utcnow
from cueclub.services.billing.types import RatePlan, TableConfig, merge_tables


collections = Blueprint('collections', __name__)


def change_room(club_id, collection: str) -> str:
    return f"club:{club_id}:{collection}"


def _error(message: str, kind: str, status: int):
    return jsonify({'error': message, 'kind': kind}), status


@collections.errorhandler(NotFound)
def _not_found(exc):
    return _error(exc.description or 'Not found', 'not_found', 404)


def _model_for(collection: str):
    model = COLLECTIONS.get(collection)
    if model is None:
        raise NotFound(f'Unknown collection: {collection}')
    return model


def _parse_key(model, key: str):
    try:
        return int(key)
    except ValueError:
        raise NotFound(f'No {model.__tablename__} with key {key}')


def _notify(club_id: int, collection: str, op: str, key) -> None:
    # Subscribers refetch; the event only says what changed
    socketio.emit(
        'change',
        {'club_id': club_id, 'collection': collection, 'op': op, 'id': key},
        to=change_room(club_id, collection),
        namespace='/ws',
    )


def _commit(collection: str):
    """Commit the pending unit of work, or an error response after rolling back."""
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        current_app.logger.warning(f"[store] {collection} conflict: {exc.orig}")
        return _error(f'{collection}: row conflicts with an existing one', 'conflict', 409)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error(f"[store] {collection} commit failed: {exc}")
        return _error(f'{collection}: could not be saved', 'unknown', 500)
    return None


def _payload():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None
    return data


@collections.route('/<int:club_id>/<collection>', methods=['GET'])
def list_rows(club_id, collection):
    model = _model_for(collection)
    Club.query.filter_by(id=club_id).first_or_404(description=f'No club {club_id}')
    rows = model.scoped(club_id).order_by(model.id).all()
    return jsonify([row.to_dict() for row in rows])


@collections.route('/<int:club_id>/<collection>', methods=['POST'])
def insert_row(club_id, collection):
    model = _model_for(collection)
    Club.query.filter_by(id=club_id).first_or_404(description=f'No club {club_id}')
    data = _payload()
    if data is None:
        return _error('JSON object body is required', 'validation', 400)
    try:
        row = model.create(club_id, data)
    except ValueError as exc:
        return _error(str(exc), 'validation', 400)
    db.session.add(row)
    failed = _commit(collection)
    if failed:
        return failed
    key = getattr(row, model.KEY)
    current_app.logger.info(f"[store] club={club_id} insert {collection} key={key}")
    _notify(club_id, collection, 'insert', key)
    return jsonify(row.to_dict()), 201


@collections.route('/<int:club_id>/<collection>/<key>', methods=['PUT'])
def update_row(club_id, collection, key):
    """Update one row; live sessions are upserted by table id."""
    model = _model_for(collection)
    Club.query.filter_by(id=club_id).first_or_404(description=f'No club {club_id}')
    key = _parse_key(model, key)
    data = _payload()
    if data is None:
        return _error('JSON object body is required', 'validation', 400)
    row = model.find(club_id, key)
    op = 'update'
    try:
        if row is None:
            if model is not LiveSession:
                raise NotFound(f'No {collection} row {key}')
            PoolTable.scoped(club_id).filter_by(id=key).first_or_404(description=f'No table {key}')
            row = model.create(club_id, dict(data, table_id=key))
            db.session.add(row)
            op = 'insert'
        else:
            row.apply(data)
    except ValueError as exc:
        db.session.rollback()
        return _error(str(exc), 'validation', 400)
    failed = _commit(collection)
    if failed:
        return failed
    current_app.logger.info(f"[store] club={club_id} {op} {collection} key={key}")
    _notify(club_id, collection, op, key)
    return jsonify(row.to_dict())


@collections.route('/<int:club_id>/<collection>/<key>', methods=['DELETE'])
def delete_row(club_id, collection, key):
    model = _model_for(collection)
    if model is Club:
        return _error('clubs cannot be deleted through the club API', 'permission', 403)
    key = _parse_key(model, key)
    row = model.find(club_id, key)
    if row is None:
        raise NotFound(f'No {collection} row {key}')
    db.session.delete(row)
    failed = _commit(collection)
    if failed:
        return failed
    current_app.logger.info(f"[store] club={club_id} delete {collection} key={key}")
    _notify(club_id, collection, 'delete', key)
    return jsonify({'deleted': key})


@collections.route('/<int:club_id>/tables/live', methods=['GET'])
def live_tables(club_id):
    """Tables merged with their running sessions, billed as of now."""
    Club.query.filter_by(id=club_id).first_or_404(description=f'No club {club_id}')
    tables = [t.to_dict() for t in PoolTable.scoped(club_id).all()]
    sessions = [s.to_dict() for s in LiveSession.scoped(club_id).all()]
    pricing = TablePricing.scoped(club_id).first()
    club_plan = RatePlan.from_dict(pricing.to_dict() if pricing else None)
    configs = {t['id']: TableConfig.from_dict(t) for t in tables}
    now = utcnow()
    live = []
    for session in merge_tables(tables, sessions):
        plan = resolve_rate_plan(club_plan, configs[session.id])
        data = session.to_dict()
        data['table_name'] = configs[session.id].table_name
        data['table_type'] = configs[session.id].table_type
        data['elapsed_ms'] = elapsed_ms(session, now)
        data['elapsed'] = format_duration(data['elapsed_ms'])
        data['live_bill'] = str(session_total(session, plan, now))
        live.append(data)
    return jsonify(live)
