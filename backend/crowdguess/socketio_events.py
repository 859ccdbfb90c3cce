from flask import current_app, request
from sqlalchemy.exc import SQLAlchemyError

from crowdguess import connections, db, rooms, socketio
from crowdguess.errors import InvalidTransition, SessionError
from crowdguess.realtime.protocol import (
    AdminJoin,
    AdminJoined,
    ConnectionReady,
    ErrorMessage,
    JoinSession,
    ParticipantUpdate,
    SessionJoined,
    SessionSubmitted,
    SubmitVote,
    parse_envelope,
    parse_message,
)
from crowdguess.services.sessions import lifecycle

# Generic reply when storage fails mid-operation; details go to the log only
_FAILURE_MESSAGES = {
    JoinSession.type: 'Failed to join session',
    SubmitVote.type: 'Failed to submit',
    AdminJoin.type: 'Failed to join as observer',
}


def _get_sid() -> str:
    # request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def handle_connect():
    sid = _get_sid()
    rooms.open(sid, request.namespace)
    rooms.send(sid, ConnectionReady())


def handle_disconnect(reason=None):
    # Runs on every disconnect path, clean or not
    connection = rooms.drop(_get_sid())
    if connection and connection.session_id and not connection.is_observer:
        _announce_count(connection.session_id)


def handle_session_join(data):
    _handle(JoinSession.type, data)


def handle_session_submit(data):
    _handle(SubmitVote.type, data)


def handle_admin_join(data):
    _handle(AdminJoin.type, data)


def handle_message(envelope):
    """Raw ``{type, payload}`` envelope, for clients that speak plain messages."""
    message_type = envelope.get('type') if isinstance(envelope, dict) else None
    _run(message_type, lambda: parse_envelope(envelope))


def handle_ping(data):
    socketio.emit('pong', data or {}, to=_get_sid(), namespace=request.namespace)


def _handle(message_type: str, payload) -> None:
    _run(message_type, lambda: parse_message(message_type, payload))


def _run(message_type, parse) -> None:
    """Parse and dispatch one inbound message; every failure becomes an ``error`` to the sender."""
    sid = _get_sid()
    try:
        _dispatch(sid, parse())
    except SessionError as exc:
        db.session.rollback()
        current_app.logger.info(f"[ws-reject] sid={sid} type={message_type} code={exc.code} {exc.message}")
        rooms.send(sid, ErrorMessage(message=exc.message, code=exc.code))
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(f"[ws-storage-error] sid={sid} type={message_type}")
        message = _FAILURE_MESSAGES.get(message_type, 'Request failed')
        rooms.send(sid, ErrorMessage(message=message, code='storage_error'))


def _dispatch(sid: str, message) -> None:
    if isinstance(message, JoinSession):
        _join(sid, message)
    elif isinstance(message, SubmitVote):
        _submit(sid, message)
    elif isinstance(message, AdminJoin):
        _admin_join(sid, message)
    else:
        raise TypeError(f'No handler for {type(message).__name__}')


def _join(sid: str, message: JoinSession) -> None:
    result = lifecycle.join_session(
        message.session_id,
        participant_id=message.participant_id,
        display_name=message.display_name,
    )
    session_id = result.session.id
    left = rooms.join(sid, session_id, participant_id=result.participant.id)
    rooms.send(sid, SessionJoined(
        session_id=session_id,
        participant=result.participant.to_dict(),
        session=lifecycle.session_snapshot(result.session),
        current_submission=result.submission.to_dict() if result.submission else None,
    ))
    if left:
        _announce_count(left)
    _announce_count(session_id)
    current_app.logger.info(
        f"[ws-join] sid={sid} session={session_id} participant={result.participant.id} "
        f"returning={result.submission is not None}"
    )


def _submit(sid: str, message: SubmitVote) -> None:
    connection = connections.get(sid)
    if connection is None or not connection.session_id or not connection.participant_id:
        raise InvalidTransition('Not connected to a session')
    submission = lifecycle.submit_vote(
        connection.session_id,
        connection.participant_id,
        vote=message.vote,
        guess=message.guess,
    )
    # Acknowledged to the submitter only
    rooms.send(sid, SessionSubmitted(submission=submission.to_dict()))


def _admin_join(sid: str, message: AdminJoin) -> None:
    session = lifecycle.get_session_or_404(message.session_id)
    left = rooms.join(sid, session.id, observer=True)
    if left:
        _announce_count(left)
    rooms.send(sid, AdminJoined(session=lifecycle.session_snapshot(session)))
    current_app.logger.info(f"[ws-observe] sid={sid} session={session.id}")


def _announce_count(session_id: str) -> None:
    rooms.broadcast(session_id, ParticipantUpdate(participant_count=rooms.participant_count(session_id)))


_HANDLERS = (
    ('connect', handle_connect),
    ('disconnect', handle_disconnect),
    (JoinSession.type, handle_session_join),
    (SubmitVote.type, handle_session_submit),
    (AdminJoin.type, handle_admin_join),
    ('message', handle_message),
    ('ping', handle_ping),
)


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    for event, handler in _HANDLERS:
        socketio.on_event(event, handler, namespace='/ws')

    if testing:
        # Test-only mirror on default namespace
        for event, handler in _HANDLERS:
            socketio.on_event(event, handler, namespace='/')
