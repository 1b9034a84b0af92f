from flask_socketio import join_room, leave_room, emit
from quizrace import socketio
from quizrace.services.rounds import events as ev


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_join_game(data):
    game_id = (data or {}).get('game_id')
    if not game_id:
        emit('error', {'message': 'game_id is required'})
        return
    room = f"game:{game_id}"
    join_room(room)
    emit('joined', {'room': room})


def handle_leave_game(data):
    game_id = (data or {}).get('game_id')
    if not game_id:
        emit('error', {'message': 'game_id is required'})
        return
    room = f"game:{game_id}"
    leave_room(room)
    emit('left', {'room': room})


def handle_ping(data):
    emit('pong', data or {})


class SocketIONotifier:
    """Broadcasts round lifecycle events to everyone watching the game."""

    BROADCAST = {
        ev.ROUND_FULL: 'round_full',
        ev.ROUND_REOPENED: 'round_reopened',
        ev.ROUND_COMPLETED: 'round_completed',
        ev.ROUND_CANCELLED: 'round_cancelled',
        ev.ROUND_CREATED: 'round_created',
    }

    def __init__(self, namespace='/ws'):
        self.namespace = namespace

    def __call__(self, event):
        name = self.BROADCAST.get(event.name)
        game_id = event.payload.get('game_id')
        if name is None or game_id is None:
            return
        socketio.emit(name, dict(event.payload), to=f"game:{game_id}", namespace=self.namespace)


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('join_game', handle_join_game, namespace='/ws')
    socketio.on_event('leave_game', handle_leave_game, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')

    if testing:
        socketio.on_event('connect', handle_connect, namespace='/')
        socketio.on_event('join_game', handle_join_game, namespace='/')
        socketio.on_event('leave_game', handle_leave_game, namespace='/')
        socketio.on_event('ping', handle_ping, namespace='/')
