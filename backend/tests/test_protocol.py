import pytest

from crowdguess.errors import MalformedMessage
from crowdguess.realtime.protocol import (
    AdminJoin,
    ErrorMessage,
    GUESS_MAX,
    JoinSession,
    SessionJoined,
    SubmitVote,
    parse_envelope,
    parse_message,
)


def test_parse_join_with_display_name():
    message = parse_message('session:join', {'sessionId': 's1', 'displayName': '  Alice '})
    assert message == JoinSession(session_id='s1', participant_id=None, display_name='Alice')


def test_parse_join_requires_identity():
    with pytest.raises(MalformedMessage):
        parse_message('session:join', {'sessionId': 's1'})
    with pytest.raises(MalformedMessage):
        parse_message('session:join', {'displayName': 'Alice'})


def test_parse_join_rejects_long_names():
    with pytest.raises(MalformedMessage):
        parse_message('session:join', {'sessionId': 's1', 'displayName': 'x' * 51})


def test_parse_submit_partial_fields():
    assert parse_message('session:submit', {'vote': 'yes'}) == SubmitVote(vote='YES', guess=None)
    assert parse_message('session:submit', {'guessYesCount': 4}) == SubmitVote(vote=None, guess=4)
    assert parse_message('session:submit', {'guessYesCount': 4.0}).guess == 4
    assert parse_message('session:submit', {'guessYesCount': GUESS_MAX}).guess == GUESS_MAX


@pytest.mark.parametrize('payload', [
    {},
    {'vote': 'MAYBE'},
    {'guessYesCount': -1},
    {'guessYesCount': True},
    {'guessYesCount': 2.5},
    {'guessYesCount': 2 ** 31},
    {'guessYesCount': 10 ** 30},
    {'guessYesCount': '9' * 40},
    {'vote': None, 'guessYesCount': None},
])
def test_parse_submit_rejects_bad_payloads(payload):
    with pytest.raises(MalformedMessage):
        parse_message('session:submit', payload)


def test_parse_admin_join():
    assert parse_message('admin:join', {'sessionId': 's1'}) == AdminJoin(session_id='s1')


def test_unknown_type_and_bad_envelopes():
    with pytest.raises(MalformedMessage):
        parse_message('session:explode', {})
    with pytest.raises(MalformedMessage):
        parse_envelope('not-an-object')
    with pytest.raises(MalformedMessage):
        parse_envelope({'type': 'session:join', 'payload': ['list']})


def test_envelope_round_trip():
    message = parse_envelope({'type': 'admin:join', 'payload': {'sessionId': 's9'}})
    assert isinstance(message, AdminJoin)
    assert message.session_id == 's9'


def test_outbound_payloads():
    joined = SessionJoined(
        session_id='s1',
        participant={'id': 'p1', 'displayName': 'Alice'},
        session={'id': 's1', 'status': 'draft'},
    )
    assert joined.event == 'session:joined'
    assert joined.payload()['participantId'] == 'p1'
    assert joined.payload()['currentSubmission'] is None
    assert ErrorMessage('nope', 'not_found').payload() == {'message': 'nope', 'code': 'not_found'}
