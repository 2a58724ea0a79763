from flask import current_app, request
from flask_socketio import emit, join_room, leave_room
from typing import Dict, Set

from cueclub import db, socketio
from cueclub.api.collections import change_room
from cueclub.models import COLLECTIONS, Club

# Rooms each connected socket joined, for logging on disconnect
_sid_rooms: Dict[str, Set[str]] = {}


def _get_sid() -> str:
    return request.sid  # type: ignore


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_disconnect(*args):
    rooms = _sid_rooms.pop(_get_sid(), set())
    if rooms:
        current_app.logger.info(f"[ws] disconnect sid={_get_sid()} rooms={len(rooms)}")


def _resolve_room(data):
    """Room for a subscribe/unsubscribe payload, or an error message."""
    data = data or {}
    collection = data.get('collection')
    if collection not in COLLECTIONS:
        return None, f'unknown collection: {collection}'
    try:
        club_id = int(data.get('club_id'))
    except (TypeError, ValueError):
        return None, 'club_id is required'
    if db.session.get(Club, club_id) is None:
        return None, f'no club {club_id}'
    return change_room(club_id, collection), None


def handle_subscribe(data):
    room, error = _resolve_room(data)
    if error:
        emit('error', {'message': error})
        return {'status': 'CHANNEL_ERROR', 'error': error}
    join_room(room)
    _sid_rooms.setdefault(_get_sid(), set()).add(room)
    return {'status': 'SUBSCRIBED', 'room': room}


def handle_unsubscribe(data):
    room, error = _resolve_room(data)
    if error:
        emit('error', {'message': error})
        return {'status': 'CHANNEL_ERROR', 'error': error}
    leave_room(room)
    _sid_rooms.get(_get_sid(), set()).discard(room)
    return {'status': 'CLOSED', 'room': room}


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    handlers = {
        'connect': handle_connect,
        'disconnect': handle_disconnect,
        'subscribe': handle_subscribe,
        'unsubscribe': handle_unsubscribe,
        'ping': handle_ping,
    }
    namespaces = ['/ws', '/'] if testing else ['/ws']
    for namespace in namespaces:
        for event, handler in handlers.items():
            socketio.on_event(event, handler, namespace=namespace)
