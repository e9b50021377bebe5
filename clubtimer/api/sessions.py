from flask import Blueprint, jsonify, request, current_app
from clubtimer import store
from clubtimer.models import CODE_ALPHABET, generate_session_code
from clubtimer.store import SessionExists, SessionNotFound, StoreError
from clubtimer.services.timer.commands import MalformedCommand
from clubtimer.services.timer.controller import IntentEmitter
from clubtimer.services.timer.derived import derived_view
from clubtimer.services.timer.state import DEFAULT_PRESETS, now_ms


sessions = Blueprint('sessions', __name__)

_last_controller_action: dict[str, float] = {}


def _normalize_code(code):
    return str(code or '').strip().upper()


def _valid_code(code: str) -> bool:
    min_len = int(current_app.config.get('MIN_SESSION_CODE_LENGTH', 4))
    return len(code) >= min_len and all(c in CODE_ALPHABET for c in code)


def _json_body():
    """Request JSON as a dict; None when the body is not a JSON object."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    return data if isinstance(data, dict) else None


def _debounced(action: str, code: str, origin_id) -> bool:
    try:
        debounce_ms = int(current_app.config.get('CONTROLLER_DEBOUNCE_MS', 0))
    except (TypeError, ValueError):
        debounce_ms = 0
    if debounce_ms <= 0:
        return False
    key = f"{action}:{code}:{origin_id}"
    now = now_ms()
    last = _last_controller_action.get(key, 0)
    if now - last < debounce_ms:
        return True
    _last_controller_action[key] = now
    return False


@sessions.route('/create', methods=['POST'])
def create_session():
    data = _json_body()
    if data is None:
        return jsonify({'error': 'Request body must be a JSON object'}), 400
    title = data.get('title') or ''
    code = _normalize_code(data.get('session_id'))
    if code:
        if not _valid_code(code):
            return jsonify({'error': 'Please enter a valid room code'}), 400
    else:
        code = generate_session_code(int(current_app.config.get('SESSION_CODE_LENGTH', 6)))
    try:
        session = store.create_session(code, title=title)
    except SessionExists:
        return jsonify({'error': f'Room "{code}" already exists'}), 409
    except StoreError as exc:
        current_app.logger.error(f"[create-failed] session={code} error={exc}")
        return jsonify({'error': 'Failed to create room'}), 503
    return jsonify({
        'message': 'New room created!',
        'session_id': session.id,
        'session': session.to_dict(),
    }), 201


@sessions.route('/presets', methods=['GET'])
def list_presets():
    return jsonify([p.to_dict() for p in DEFAULT_PRESETS])


@sessions.route('/<string:session_id>', methods=['GET'])
def get_session(session_id):
    code = _normalize_code(session_id)
    try:
        session = store.get_session(code)
    except StoreError:
        return jsonify({'error': 'Store unavailable'}), 503
    if session is None:
        return jsonify({'error': f'Room "{code}" not found'}), 404
    payload = session.to_dict()
    payload['derived'] = derived_view(session, now_ms())
    return jsonify(payload)


@sessions.route('/<string:session_id>/commands', methods=['POST'])
def send_command(session_id):
    code = _normalize_code(session_id)
    data = _json_body()
    if data is None:
        return jsonify({'error': 'Request body must be a JSON object'}), 400
    origin_id = data.get('origin_id') or request.remote_addr or 'anonymous'
    command_type = data.get('type')

    if _debounced(str(command_type), code, origin_id):
        return jsonify({'message': 'debounced'}), 202

    emitter = IntentEmitter(store.outbox(code), str(origin_id))
    try:
        command_id = emitter.send_record(command_type, data.get('payload'))
    except MalformedCommand as exc:
        current_app.logger.warning(f"[command-refused] session={code} origin={origin_id} type={command_type} reason={exc}")
        return jsonify({'error': str(exc)}), 400
    except SessionNotFound:
        return jsonify({'error': f'Room "{code}" not found'}), 404
    except StoreError as exc:
        current_app.logger.error(f"[command-append-failed] session={code} error={exc}")
        return jsonify({'error': 'Failed to send command'}), 503
    return jsonify({'message': 'queued', 'command_id': command_id}), 202


@sessions.route('/<string:session_id>/commands', methods=['GET'])
def pending_commands(session_id):
    code = _normalize_code(session_id)
    try:
        if not store.session_exists(code):
            return jsonify({'error': f'Room "{code}" not found'}), 404
        pending = store.list_commands(code)
    except StoreError:
        return jsonify({'error': 'Store unavailable'}), 503
    return jsonify(pending)


@sessions.route('/<string:session_id>/controller', methods=['POST'])
def controller_presence(session_id):
    code = _normalize_code(session_id)
    data = _json_body()
    if data is None:
        return jsonify({'error': 'Request body must be a JSON object'}), 400
    origin_id = data.get('origin_id')
    if not origin_id:
        return jsonify({'error': 'origin_id is required'}), 400
    try:
        store.touch_controller(code, str(origin_id))
    except SessionNotFound:
        return jsonify({'error': f'Room "{code}" not found'}), 404
    except StoreError:
        return jsonify({'error': 'Store unavailable'}), 503
    return jsonify({'ok': True})
