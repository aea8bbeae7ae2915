import functools
import logging
import os

from flask import Flask, session, request
from flask_socketio import SocketIO, emit

import config
import db
from errors import AlreadyInRoom, GameError, RoomNotFound, ValidationFailed
from game import RoomController
from images import ImageGenerator

logging.basicConfig(level=config.LOG_LEVEL, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config['SECRET_KEY'] = config.SECRET_KEY
# Use threading instead of eventlet for Python 3.12 compatibility
socketio = SocketIO(app, cors_allowed_origins="*", async_mode='threading')

player_sessions = {}  # socket_id: player_id
client_rooms = {}  # socket_id: {'code', 'name', 'unsubscribe'}


def generate_session_id():
    return os.urandom(16).hex()


def current_player_id():
    return player_sessions.get(request.sid)


controller = RoomController(db.create_store(), ImageGenerator(), identity=current_player_id)


def notify(message, kind='info', to=None):
    """Transient notification; the browser hides it after NOTIFICATION_TIMEOUT_MS."""
    payload = {'message': message, 'type': kind, 'timeout_ms': config.NOTIFICATION_TIMEOUT_MS}
    if to is None:
        emit('notification', payload)
    else:
        socketio.emit('notification', payload, to=to)


def reports_errors(handler):
    """Turn failures of a socket handler into a notification for the caller."""
    @functools.wraps(handler)
    def wrapper(*args, **kwargs):
        try:
            return handler(*args, **kwargs)
        except GameError as e:
            logger.warning(f"⚠️  {handler.__name__}: {type(e).__name__}: {e}")
            notify(str(e), e.notice_type)
        except Exception:
            logger.exception(f"❌ Unexpected error in {handler.__name__}")
            notify('Something went wrong. Please try again.', 'error')
    return wrapper


def enter_room(sid, code, player_id, name):
    """Subscribe socket `sid` to the room and its chat."""
    exit_room(sid)
    entry = {'code': code, 'name': name, 'unsubscribe': []}
    client_rooms[sid] = entry

    def on_room_change(room):
        if room is None:
            socketio.emit('room_deleted', {'code': code}, to=sid)
            notify('The room does not exist or was deleted.', 'error', to=sid)
            exit_room(sid)
            return
        socketio.emit('room_update', controller.player_view(room, player_id).to_dict(), to=sid)

    def on_messages_change(messages):
        socketio.emit('messages_update', {
            'code': code,
            'messages': [m.to_record() for m in messages]
        }, to=sid)

    emit('room_joined', {'code': code, 'player_id': player_id, 'name': name})
    unsubscribers = [
        controller.subscribe_room(code, on_room_change),
        controller.subscribe_messages(code, on_messages_change),
    ]
    if client_rooms.get(sid) is entry:
        entry['unsubscribe'] = unsubscribers
    else:
        # The room vanished during the first snapshot
        for unsubscribe in unsubscribers:
            unsubscribe()


def exit_room(sid):
    entry = client_rooms.pop(sid, None)
    if entry:
        for unsubscribe in entry['unsubscribe']:
            unsubscribe()
    return entry


def room_entry():
    entry = client_rooms.get(request.sid)
    if not entry:
        raise ValidationFailed('You are not in a room.')
    return entry


@app.route('/')
def index():
    if 'session_id' not in session:
        session['session_id'] = generate_session_id()
    return {
        'app': 'GuessDuel',
        'store': type(controller.store).__name__,
        'namespace': config.APP_ID,
        'connected_players': len(player_sessions)
    }


@app.route('/rooms/<code>')
def room_summary(code):
    """Public room info. Images and prompts stay private to the players."""
    try:
        room = controller.get_room(code)
    except RoomNotFound as e:
        return {'error': str(e)}, 404
    except GameError as e:
        return {'error': str(e)}, 503

    return {
        'code': room.code,
        'players': [
            {'name': p.name, 'score': p.score}
            for p in (room.player1, room.player2) if p
        ],
        'round_active': room.round_active,
        'last_winner_name': room.last_winner_name,
        'created_at': room.created_at
    }


@socketio.on('connect')
def handle_connect(auth=None):
    session_id = session.get('session_id')
    if not session_id:
        session_id = generate_session_id()
        session['session_id'] = session_id

    # A signed-in user keeps the same id across sessions
    player_id = session_id
    token = auth.get('access_token') if isinstance(auth, dict) else None
    if token:
        player_id = controller.store.resolve_user_id(token) or session_id

    player_sessions[request.sid] = player_id
    emit('identity', {'player_id': player_id})
    logger.info(f"Client connected: {request.sid} (player: {player_id[:8]})")


@socketio.on('disconnect')
def handle_disconnect(reason=None):
    exit_room(request.sid)
    player_id = player_sessions.pop(request.sid, None)
    logger.info(f"Client disconnected: {request.sid} (player: {(player_id or '')[:8]})")


@socketio.on('create_room')
@reports_errors
def handle_create_room(data=None):
    data = data or {}
    room = controller.create_room(data.get('name'))
    enter_room(request.sid, room.code, room.player1.id, room.player1.name)
    notify(f'Room created! Room code: {room.code}', 'success')


@socketio.on('join_room')
@reports_errors
def handle_join_room(data=None):
    data = data or {}
    try:
        room = controller.join_room(data.get('code'), data.get('name'))
    except AlreadyInRoom as e:
        me = e.room.player(e.slot)
        enter_room(request.sid, e.room.code, me.id, me.name)
        notify(str(e), e.notice_type)
        return

    me = room.player(room.slot_of(current_player_id()))
    enter_room(request.sid, room.code, me.id, me.name)
    notify('Joined the room!', 'success')


@socketio.on('start_round')
@reports_errors
def handle_start_round(data=None):
    entry = room_entry()
    emit('images_loading', {'loading': True})
    try:
        controller.start_round(entry['code'])
    finally:
        emit('images_loading', {'loading': False})
    notify('New images are ready!', 'success')


@socketio.on('change_images')
@reports_errors
def handle_change_images(data=None):
    entry = room_entry()
    emit('images_loading', {'loading': True})
    try:
        controller.change_images(entry['code'])
    finally:
        emit('images_loading', {'loading': False})
    notify('New images are ready!', 'success')


@socketio.on('guess')
@reports_errors
def handle_guess(data=None):
    data = data or {}
    entry = room_entry()
    result = controller.guess(entry['code'], data.get('text'))
    emit('guess_result', {'correct': result.correct})
    if result.correct:
        notify('Correct guess! You won this round.', 'success')
    elif result.round_over:
        notify('This round is already over. Start a new round to keep playing.', 'info')
    else:
        notify('Wrong guess. Try again!', 'error')


@socketio.on('end_round')
@reports_errors
def handle_end_round(data=None):
    entry = room_entry()
    controller.end_round(entry['code'])
    notify('The round has ended. Start a new round or leave the room.', 'info')


@socketio.on('leave_room')
@reports_errors
def handle_leave_room(data=None):
    entry = exit_room(request.sid)
    if not entry:
        emit('room_left', {'code': None})
        return
    try:
        controller.leave_room(entry['code'])
    finally:
        emit('room_left', {'code': entry['code']})


@socketio.on('send_message')
@reports_errors
def handle_send_message(data=None):
    data = data or {}
    entry = room_entry()
    controller.send_message(entry['code'], data.get('text'), caller_name=entry['name'])


if __name__ == '__main__':
    # Get port from environment variable (for Railway/deployment) or default to 8000
    port = config.PORT
    # Disable debug mode in production
    debug = config.FLASK_ENV != 'production'

    logger.info(f"Starting GuessDuel server on http://0.0.0.0:{port}")
    if not config.GEMINI_API_KEY:
        logger.warning("⚠️  WARNING: GEMINI_API_KEY not set - rounds cannot generate images")
    socketio.run(app, host='0.0.0.0', port=port, debug=debug, allow_unsafe_werkzeug=debug)
