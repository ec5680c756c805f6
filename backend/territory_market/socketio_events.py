from decimal import Decimal
from flask_socketio import join_room, leave_room, emit
from flask import current_app
from territory_market import socketio


def auction_room(auction_id) -> str:
    return f"auction:{auction_id}"


def territory_room(territory_id) -> str:
    return f"territory:{territory_id}"


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def _room_from(data, field, room_for):
    value = (data or {}).get(field)
    if value is None or value == '':
        emit('error', {'message': f'{field} is required'})
        return None
    return room_for(value)


def handle_join_auction(data):
    room = _room_from(data, 'auction_id', auction_room)
    if room:
        join_room(room)
        emit('joined', {'room': room})


def handle_leave_auction(data):
    room = _room_from(data, 'auction_id', auction_room)
    if room:
        leave_room(room)
        emit('left', {'room': room})


def handle_join_territory(data):
    room = _room_from(data, 'territory_id', territory_room)
    if room:
        join_room(room)
        emit('joined', {'room': room})


def handle_leave_territory(data):
    room = _room_from(data, 'territory_id', territory_room)
    if room:
        leave_room(room)
        emit('left', {'room': room})


def handle_ping(data):
    emit('pong', data or {})


# ---- Broadcasts, called after a write has committed ----

def broadcast_auction(auction: dict) -> None:
    socketio.emit('auction_update', auction, to=auction_room(auction['id']), namespace='/ws')


def broadcast_territory(territory: dict) -> None:
    socketio.emit('territory_update', territory, to=territory_room(territory['id']), namespace='/ws')


def broadcast_committed(auctions=(), territories=()) -> None:
    """Push fresh snapshots of the given rows to their rooms.

    Delivery is best effort: a failed push is logged and the committed write
    stands.
    """
    from territory_market.models import Auction, Territory
    from territory_market import db
    increment = Decimal(str(current_app.config.get('BID_INCREMENT', '1')))
    try:
        for auction_id in {a for a in auctions if a is not None}:
            auction = db.session.get(Auction, auction_id)
            if auction is not None:
                broadcast_auction(auction.to_dict(increment=increment))
        for territory_id in {t for t in territories if t is not None}:
            territory = db.session.get(Territory, territory_id)
            if territory is not None:
                broadcast_territory(territory.to_dict())
    except Exception as exc:
        current_app.logger.warning(f"[broadcast-failed] error={exc!r}")


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    handlers = {
        'connect': handle_connect,
        'join_auction': handle_join_auction,
        'leave_auction': handle_leave_auction,
        'join_territory': handle_join_territory,
        'leave_territory': handle_leave_territory,
        'ping': handle_ping,
    }
    namespaces = ['/ws', '/'] if testing else ['/ws']
    for namespace in namespaces:
        for event, handler in handlers.items():
            socketio.on_event(event, handler, namespace=namespace)
