"""Wire protocol for the ``/ws`` namespace.

Inbound messages are parsed into one of a closed set of message classes;
outbound messages are built from the classes below, each of which knows
its event name and its payload. Event names double as the ``type`` tag of
the ``{type, payload}`` envelope accepted on the generic ``message`` event.
"""
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional

from crowdguess.errors import MalformedMessage

DISPLAY_NAME_MAX = 50
# Guesses are stored in a 32-bit INTEGER column
GUESS_MAX = 2 ** 31 - 1


# ---- inbound ----

@dataclass(frozen=True)
class JoinSession:
    type: ClassVar[str] = 'session:join'
    session_id: str
    participant_id: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class SubmitVote:
    """Partial update: ``None`` means "leave this field as it is"."""
    type: ClassVar[str] = 'session:submit'
    vote: Optional[str] = None
    guess: Optional[int] = None


@dataclass(frozen=True)
class AdminJoin:
    type: ClassVar[str] = 'admin:join'
    session_id: str


INBOUND_MESSAGES = (JoinSession, SubmitVote, AdminJoin)


def _require_mapping(payload) -> Dict[str, Any]:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise MalformedMessage('Message payload must be an object')
    return payload


def _optional_str(payload, key) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedMessage(f'{key} must be a string')
    value = value.strip()
    return value or None


def parse_session_id(payload) -> str:
    session_id = _optional_str(_require_mapping(payload), 'sessionId')
    if not session_id:
        raise MalformedMessage('sessionId is required')
    return session_id


def parse_display_name(value) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedMessage('displayName must be a string')
    value = value.strip()
    if not value:
        return None
    if len(value) > DISPLAY_NAME_MAX:
        raise MalformedMessage(f'displayName must be at most {DISPLAY_NAME_MAX} characters')
    return value


def parse_vote(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str) and value.strip().upper() in ('YES', 'NO'):
        return value.strip().upper()
    raise MalformedMessage('vote must be "YES" or "NO"')


def parse_guess(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedMessage('guessYesCount must be a whole number')
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 0:
        raise MalformedMessage('guessYesCount must be a whole number >= 0')
    if value > GUESS_MAX:
        raise MalformedMessage(f'guessYesCount must be at most {GUESS_MAX}')
    return value


def parse_join(payload) -> JoinSession:
    payload = _require_mapping(payload)
    session_id = parse_session_id(payload)
    participant_id = _optional_str(payload, 'participantId')
    display_name = parse_display_name(payload.get('displayName'))
    if not (participant_id or display_name):
        raise MalformedMessage('participantId or displayName is required')
    return JoinSession(session_id=session_id, participant_id=participant_id, display_name=display_name)


def parse_submit(payload) -> SubmitVote:
    payload = _require_mapping(payload)
    vote = parse_vote(payload.get('vote'))
    guess = parse_guess(payload.get('guessYesCount'))
    if vote is None and guess is None:
        raise MalformedMessage('vote or guessYesCount is required')
    return SubmitVote(vote=vote, guess=guess)


def parse_admin_join(payload) -> AdminJoin:
    return AdminJoin(session_id=parse_session_id(payload))


_PARSERS = {
    JoinSession.type: parse_join,
    SubmitVote.type: parse_submit,
    AdminJoin.type: parse_admin_join,
}


def parse_message(message_type, payload):
    """Parse an inbound message; raises ``MalformedMessage`` for anything unknown or invalid."""
    parser = _PARSERS.get(message_type) if isinstance(message_type, str) else None
    if parser is None:
        raise MalformedMessage(f'Unknown message type: {message_type!r}')
    return parser(payload)


def parse_envelope(envelope):
    """Parse a raw ``{type, payload}`` envelope."""
    if not isinstance(envelope, dict):
        raise MalformedMessage('Invalid message format')
    return parse_message(envelope.get('type'), envelope.get('payload'))


# ---- outbound ----

class Outbound:
    event: ClassVar[str]

    def payload(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass
class ConnectionReady(Outbound):
    event: ClassVar[str] = 'connection:ready'

    def payload(self):
        return {}


@dataclass
class SessionJoined(Outbound):
    event: ClassVar[str] = 'session:joined'
    session_id: str
    participant: Dict[str, Any]
    session: Dict[str, Any]
    current_submission: Optional[Dict[str, Any]] = None

    def payload(self):
        return {
            'sessionId': self.session_id,
            'participantId': self.participant['id'],
            'participant': self.participant,
            'session': self.session,
            'currentSubmission': self.current_submission,
        }


@dataclass
class AdminJoined(Outbound):
    event: ClassVar[str] = 'admin:joined'
    session: Dict[str, Any]

    def payload(self):
        return {'session': self.session}


@dataclass
class SessionStarted(Outbound):
    event: ClassVar[str] = 'session:started'
    session: Dict[str, Any]
    time_remaining: int

    def payload(self):
        return {'session': self.session, 'timeRemaining': self.time_remaining}


@dataclass
class SessionTick(Outbound):
    event: ClassVar[str] = 'session:tick'
    time_remaining: int

    def payload(self):
        return {'timeRemaining': self.time_remaining}


@dataclass
class SessionSubmitted(Outbound):
    event: ClassVar[str] = 'session:submitted'
    submission: Dict[str, Any]

    def payload(self):
        return {'submission': self.submission}


@dataclass
class ParticipantUpdate(Outbound):
    event: ClassVar[str] = 'session:participant_update'
    participant_count: int

    def payload(self):
        return {'participantCount': self.participant_count}


@dataclass
class SessionResults(Outbound):
    event: ClassVar[str] = 'session:results'
    results: Dict[str, Any] = field(default_factory=dict)

    def payload(self):
        return self.results


@dataclass
class ErrorMessage(Outbound):
    event: ClassVar[str] = 'error'
    message: str
    code: str = 'error'

    def payload(self):
        return {'message': self.message, 'code': self.code}

