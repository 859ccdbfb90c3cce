from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from crowdguess import db
from crowdguess.errors import MalformedMessage, NotFound
from crowdguess.models import Game, GameSession
from crowdguess.realtime.protocol import parse_display_name
from crowdguess.services.sessions import lifecycle


games = Blueprint('games', __name__)


def _game_or_404(game_id: str) -> Game:
    game = db.session.get(Game, game_id)
    if not game:
        raise NotFound('Game not found')
    return game


def _required_name(value, field: str = 'displayName') -> str:
    name = parse_display_name(value)
    if not name:
        raise MalformedMessage(f'{field} is required')
    return name


@games.route('/games', methods=['POST'])
def create_game():
    data = request.get_json(silent=True) or {}
    name = data.get('name')
    if not isinstance(name, str) or not name.strip():
        return jsonify({'error': 'Game name is required'}), 400
    game = Game(name=name.strip()[:120])
    db.session.add(game)
    db.session.commit()
    current_app.logger.info(f"[game-create] game={game.id} code={game.code}")
    return jsonify({'gameId': game.id, 'code': game.code}), 201


@games.route('/games/<string:game_id>', methods=['GET'])
def get_game(game_id):
    return jsonify(_game_or_404(game_id).to_dict())


@games.route('/games/code/<string:code>', methods=['GET'])
def get_game_by_code(code):
    game = Game.query.filter_by(code=code.upper()).first()
    if not game:
        raise NotFound('Game not found')
    return jsonify(game.to_dict())


@games.route('/games/<string:game_id>/sessions', methods=['GET'])
def list_sessions(game_id):
    game = _game_or_404(game_id)
    sessions = GameSession.query.filter_by(game_id=game.id).order_by(GameSession.created_at).all()
    return jsonify([lifecycle.session_snapshot(s) for s in sessions])


@games.route('/games/<string:game_id>/sessions', methods=['POST'])
def create_session(game_id):
    game = _game_or_404(game_id)
    data = request.get_json(silent=True) or {}
    timer_seconds = data.get('timerSeconds', current_app.config.get('DEFAULT_TIMER_SEC', 30))
    session = lifecycle.create_session(game.id, data.get('question'), timer_seconds)
    return jsonify({'sessionId': session.id}), 201


@games.route('/participants', methods=['POST'])
def create_participant():
    """Idempotent: re-using a display name within a game returns the existing participant."""
    data = request.get_json(silent=True) or {}
    game_id = data.get('gameId')
    if not isinstance(game_id, str) or not game_id:
        raise MalformedMessage('gameId is required')
    game = _game_or_404(game_id)
    name = _required_name(data.get('displayName'))
    participant, created = lifecycle.get_or_create_participant(game.id, name)
    return jsonify(participant.to_dict()), 201 if created else 200


@games.route('/games/<string:game_id>/play-as', methods=['POST'])
@login_required
def play_as_participant(game_id):
    """Let the logged-in admin take part in their own game."""
    game = _game_or_404(game_id)
    data = request.get_json(silent=True) or {}
    name = _required_name(data.get('displayName') or current_user.name)
    participant, created = lifecycle.get_or_create_participant(game.id, name, owner_admin_user_id=current_user.id)
    if not created and participant.owner_admin_user_id != current_user.id:
        return jsonify({'error': 'Display name is taken', 'code': 'name_taken'}), 409
    return jsonify(participant.to_dict()), 201 if created else 200
