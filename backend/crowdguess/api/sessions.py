from flask import Blueprint, jsonify, request
from crowdguess.realtime.protocol import SessionJoined, parse_join
from crowdguess.services.sessions import lifecycle
from crowdguess.utils.datetime_helpers import isoformat


sessions = Blueprint('sessions', __name__)


@sessions.route('/<string:session_id>', methods=['GET'])
def get_session(session_id):
    # Minimal projection while live; full record plus results once closed
    session = lifecycle.get_session_or_404(session_id)
    return jsonify(lifecycle.session_snapshot(session))


@sessions.route('/<string:session_id>', methods=['PATCH'])
def update_session(session_id):
    data = request.get_json(silent=True) or {}
    session = lifecycle.update_draft_session(
        session_id,
        question=data.get('question'),
        timer_seconds=data.get('timerSeconds'),
    )
    return jsonify(lifecycle.session_snapshot(session))


@sessions.route('/<string:session_id>/start', methods=['POST'])
def start_session(session_id):
    session = lifecycle.start_session(session_id)
    return jsonify({
        'startedAt': isoformat(session.started_at),
        'endsAt': isoformat(session.ends_at),
        'session': lifecycle.session_snapshot(session),
    })


@sessions.route('/<string:session_id>/end', methods=['POST'])
def end_session(session_id):
    """Manual early close. Safe to repeat: a closed session returns its stored results."""
    results = lifecycle.end_session(session_id)
    return jsonify(results)


@sessions.route('/<string:session_id>/cancel', methods=['POST'])
def cancel_session(session_id):
    session = lifecycle.cancel_session(session_id)
    return jsonify(lifecycle.session_snapshot(session))


@sessions.route('/<string:session_id>/restart', methods=['POST'])
def restart_session(session_id):
    session = lifecycle.restart_session(session_id)
    return jsonify({'sessionId': session.id}), 201


@sessions.route('/<string:session_id>/join', methods=['POST'])
def join_session(session_id):
    """Join without a live connection; same payload as ``session:joined``."""
    data = request.get_json(silent=True) or {}
    message = parse_join({
        'sessionId': session_id,
        'participantId': data.get('participantId'),
        'displayName': data.get('displayName'),
    })
    result = lifecycle.join_session(
        message.session_id,
        participant_id=message.participant_id,
        display_name=message.display_name,
    )
    joined = SessionJoined(
        session_id=result.session.id,
        participant=result.participant.to_dict(),
        session=lifecycle.session_snapshot(result.session),
        current_submission=result.submission.to_dict() if result.submission else None,
    )
    return jsonify(joined.payload())
