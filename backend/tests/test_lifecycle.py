from datetime import timedelta

import pytest
from sqlalchemy.dialects import postgresql

from crowdguess import db, rooms, timers
from crowdguess.errors import (
    InvalidTransition,
    JoinWindowClosed,
    MalformedMessage,
    NotFound,
    SessionExpired,
    SessionNotLive,
)
from crowdguess.models import GameSession, Participant, ScoreRecord, Submission
from crowdguess.services.sessions import lifecycle
from crowdguess.utils.datetime_helpers import ensure_utc

LIVE_KEYS = {'id', 'status', 'question', 'endsAt'}


@pytest.fixture()
def sent(monkeypatch):
    """Record every room broadcast instead of emitting it."""
    log = []
    monkeypatch.setattr(rooms, 'broadcast', lambda session_id, message, include_observers=True: log.append(
        (session_id, message.event, message.payload())
    ))
    return log


def _player(session, name):
    return lifecycle.join_session(session.id, display_name=name).participant


def _live_session(make_session, timer_seconds=30):
    session = make_session(timer_seconds=timer_seconds)
    lifecycle.start_session(session.id)
    return session


# ---- start ----

def test_start_sets_deadline(make_session, clock, sent):
    session = make_session(timer_seconds=30)
    lifecycle.start_session(session.id)
    session = lifecycle.get_session_or_404(session.id)
    assert session.status == 'live'
    assert ensure_utc(session.started_at) == clock.now
    assert ensure_utc(session.ends_at) == clock.now + timedelta(seconds=30)
    assert session.ended_at is None
    started = [payload for _, event, payload in sent if event == 'session:started']
    assert started == [{'session': lifecycle.session_snapshot(session), 'timeRemaining': 30}]
    assert set(started[0]['session']) == LIVE_KEYS


def test_start_only_from_draft(make_session, clock, sent):
    session = _live_session(make_session)
    with pytest.raises(InvalidTransition):
        lifecycle.start_session(session.id)


def test_start_unknown_session(flask_app, clock):
    with pytest.raises(NotFound):
        lifecycle.start_session('missing')


# ---- submit ----

def test_submit_rejected_while_draft(make_session, clock):
    session = make_session()
    alice = _player(session, 'Alice')
    with pytest.raises(SessionNotLive):
        lifecycle.submit_vote(session.id, alice.id, vote='YES')


def test_submit_merges_partial_updates(make_session, clock, sent):
    session = _live_session(make_session)
    alice = _player(session, 'Alice')

    first = lifecycle.submit_vote(session.id, alice.id, vote='YES')
    first_at = ensure_utc(first.submitted_at)
    clock.advance(2)
    second = lifecycle.submit_vote(session.id, alice.id, guess=4)

    assert second.vote == 'YES'
    assert second.guess_yes_count == 4
    assert ensure_utc(second.submitted_at) > first_at
    assert Submission.query.filter_by(session_id=session.id).count() == 1


def test_vote_can_change_before_deadline(make_session, clock, sent):
    session = _live_session(make_session)
    alice = _player(session, 'Alice')
    lifecycle.submit_vote(session.id, alice.id, vote='YES', guess=1)
    updated = lifecycle.submit_vote(session.id, alice.id, vote='NO')
    assert (updated.vote, updated.guess_yes_count) == ('NO', 1)


def test_submit_after_deadline_before_close(make_session, clock, sent):
    session = _live_session(make_session)
    alice = _player(session, 'Alice')
    clock.advance(30)
    with pytest.raises(SessionExpired):
        lifecycle.submit_vote(session.id, alice.id, vote='YES')
    assert lifecycle.get_session_or_404(session.id).status == 'live'


def test_submit_requires_participant_of_same_game(make_session, clock, sent):
    session = _live_session(make_session)
    other = make_session()
    stranger = _player(other, 'Mallory')
    with pytest.raises(NotFound):
        lifecycle.submit_vote(session.id, stranger.id, vote='YES')
    with pytest.raises(NotFound):
        lifecycle.submit_vote(session.id, 'nobody', vote='YES')


def test_close_landing_between_flush_and_commit_rejects_submit(make_session, clock, sent, monkeypatch):
    session = _live_session(make_session)
    alice = _player(session, 'Alice')
    lifecycle.submit_vote(session.id, alice.id, vote='YES', guess=1)

    locked_status = lifecycle._locked_status

    def close_then_lock(session_id):
        # The close commits while our changed row is flushed but not yet committed
        GameSession.query.filter_by(id=session_id).update(
            {'status': 'closed', 'results_computed': True}, synchronize_session=False
        )
        return locked_status(session_id)

    monkeypatch.setattr(lifecycle, '_locked_status', close_then_lock)
    with pytest.raises(SessionNotLive):
        lifecycle.submit_vote(session.id, alice.id, vote='NO', guess=3)

    stored = Submission.query.filter_by(session_id=session.id, participant_id=alice.id).one()
    assert (stored.vote, stored.guess_yes_count) == ('YES', 1)


def test_commit_time_status_read_takes_row_lock(flask_app):
    statement = lifecycle.session_status_query('s1').statement
    assert 'FOR UPDATE' in str(statement.compile(dialect=postgresql.dialect()))


# ---- close ----

def test_close_is_idempotent(make_session, clock, sent):
    session = _live_session(make_session)
    alice = _player(session, 'Alice')
    bob = _player(session, 'Bob')
    lifecycle.submit_vote(session.id, alice.id, vote='YES', guess=1)
    lifecycle.submit_vote(session.id, bob.id, vote='NO', guess=0)

    results, closed_now = lifecycle.close_session(session.id)
    again, closed_again = lifecycle.close_session(session.id)

    assert closed_now is True
    assert closed_again is False
    assert again == results
    assert ScoreRecord.query.filter_by(session_id=session.id).count() == 2
    closed = lifecycle.get_session_or_404(session.id)
    assert closed.status == 'closed'
    assert closed.results_computed is True
    assert ensure_utc(closed.ended_at) == clock.now


def test_close_requires_live(make_session, clock):
    session = make_session()
    with pytest.raises(InvalidTransition):
        lifecycle.close_session(session.id)


def test_stored_results_are_authoritative(make_session, clock, sent):
    session = _live_session(make_session)
    alice = _player(session, 'Alice')
    lifecycle.submit_vote(session.id, alice.id, vote='YES', guess=1)
    lifecycle.close_session(session.id)

    record = ScoreRecord.query.filter_by(session_id=session.id, participant_id=alice.id).one()
    record.points = 3
    db.session.commit()

    results, closed_now = lifecycle.close_session(session.id)
    assert closed_now is False
    assert results['rows'][0]['points'] == 3


def test_end_to_end_three_players(make_session, clock, sent):
    session = _live_session(make_session, timer_seconds=30)
    p1 = _player(session, 'P1')
    p2 = _player(session, 'P2')
    p3 = _player(session, 'P3')
    lifecycle.submit_vote(session.id, p1.id, vote='YES', guess=2)
    lifecycle.submit_vote(session.id, p2.id, vote='NO', guess=3)
    lifecycle.submit_vote(session.id, p3.id, vote='YES')

    clock.advance(30)
    results = lifecycle.expire_session(session.id)

    assert results['yesCount'] == 2
    assert results['noCount'] == 1
    points = {row['displayName']: row['points'] for row in results['rows']}
    assert points == {'P1': 5, 'P2': 3, 'P3': 0}
    assert {d['participantId']: d['deltaPoints'] for d in results['leaderboardDelta']} == {
        p1.id: 5, p2.id: 3, p3.id: 0,
    }
    reveals = [payload for _, event, payload in sent if event == 'session:results']
    assert reveals == [results]


def test_timer_and_manual_end_race_reveals_once(make_session, clock, sent):
    session = _live_session(make_session)
    alice = _player(session, 'Alice')
    lifecycle.submit_vote(session.id, alice.id, vote='YES', guess=1)

    manual = lifecycle.end_session(session.id)
    clock.advance(30)
    expired = lifecycle.expire_session(session.id)

    assert manual == expired
    reveals = [payload for _, event, payload in sent if event == 'session:results']
    assert len(reveals) == 1
    assert ScoreRecord.query.filter_by(session_id=session.id).count() == 1


def test_end_disarms_deadline_before_closing(make_session, clock, monkeypatch):
    session = _live_session(make_session)
    order = []
    monkeypatch.setattr(timers, 'cancel', lambda session_id: order.append(('cancel', session_id)))
    monkeypatch.setattr(rooms, 'broadcast', lambda session_id, message, include_observers=True: order.append(
        (message.event, session_id)
    ))
    lifecycle.end_session(session.id)
    assert order == [('cancel', session.id), ('session:results', session.id)]


def test_end_rejects_draft(make_session, clock):
    with pytest.raises(InvalidTransition):
        lifecycle.end_session(make_session().id)


def test_expire_of_canceled_session_is_skipped(make_session, clock):
    session = make_session()
    lifecycle.cancel_session(session.id)
    assert lifecycle.expire_session(session.id) is None


def test_participant_without_submission_is_not_scored(make_session, clock, sent):
    session = _live_session(make_session)
    _player(session, 'Lurker')
    voter = _player(session, 'Voter')
    lifecycle.submit_vote(session.id, voter.id, vote='NO', guess=0)
    results, _ = lifecycle.close_session(session.id)
    assert [row['displayName'] for row in results['rows']] == ['Voter']
    assert results['rows'][0]['points'] == 5


# ---- snapshots ----

def test_live_snapshot_never_leaks(make_session, clock, sent):
    session = _live_session(make_session)
    alice = _player(session, 'Alice')
    lifecycle.submit_vote(session.id, alice.id, vote='YES', guess=3)

    snapshot = lifecycle.session_snapshot(lifecycle.get_session_or_404(session.id))
    assert set(snapshot) == LIVE_KEYS

    bob = lifecycle.join_session(session.id, display_name='Bob')
    assert set(lifecycle.session_snapshot(bob.session)) == LIVE_KEYS
    assert bob.submission is None


def test_closed_snapshot_includes_results(make_session, clock, sent):
    session = _live_session(make_session)
    alice = _player(session, 'Alice')
    lifecycle.submit_vote(session.id, alice.id, vote='YES', guess=1)
    lifecycle.end_session(session.id)
    snapshot = lifecycle.session_snapshot(lifecycle.get_session_or_404(session.id))
    assert snapshot['status'] == 'closed'
    assert snapshot['results']['yesCount'] == 1
    assert snapshot['results']['rows'][0]['points'] == 5


def test_tick_reports_remaining_time(make_session, clock, sent):
    session = _live_session(make_session, timer_seconds=30)
    clock.advance(12.5)
    assert lifecycle.tick_session(session.id) is True
    ticks = [payload for _, event, payload in sent if event == 'session:tick']
    assert ticks == [{'timeRemaining': 17}]

    lifecycle.end_session(session.id)
    assert lifecycle.tick_session(session.id) is False


# ---- join ----

def test_join_creates_and_reuses_participant(make_session, clock):
    session = make_session()
    first = lifecycle.join_session(session.id, display_name='Alice')
    again = lifecycle.join_session(session.id, display_name='Alice')
    by_id = lifecycle.join_session(session.id, participant_id=first.participant.id)
    assert first.participant.id == again.participant.id == by_id.participant.id
    assert Participant.query.filter_by(display_name='Alice').count() == 1


def test_join_cutoff_blocks_new_participants(make_session, clock, sent):
    session = _live_session(make_session, timer_seconds=30)
    clock.advance(21)
    with pytest.raises(JoinWindowClosed):
        lifecycle.join_session(session.id, display_name='Latecomer')
    assert Participant.query.filter_by(display_name='Latecomer').count() == 0


def test_join_cutoff_boundary(make_session, clock, sent):
    session = _live_session(make_session, timer_seconds=30)
    clock.advance(20)
    assert lifecycle.join_session(session.id, display_name='JustInTime').participant.id


def test_join_cutoff_applies_to_known_but_silent_participant(make_session, clock, sent):
    session = _live_session(make_session, timer_seconds=30)
    quiet = _player(session, 'Quiet')
    clock.advance(25)
    with pytest.raises(JoinWindowClosed):
        lifecycle.join_session(session.id, participant_id=quiet.id)


def test_returning_participant_ignores_cutoff(make_session, clock, sent):
    session = _live_session(make_session, timer_seconds=30)
    alice = _player(session, 'Alice')
    lifecycle.submit_vote(session.id, alice.id, vote='YES', guess=2)
    clock.advance(28)

    rejoined = lifecycle.join_session(session.id, participant_id=alice.id)
    assert rejoined.submission.vote == 'YES'
    assert rejoined.submission.guess_yes_count == 2
    by_name = lifecycle.join_session(session.id, display_name='Alice')
    assert by_name.submission is not None


def test_join_errors(make_session, clock):
    session = make_session()
    with pytest.raises(NotFound):
        lifecycle.join_session('missing', display_name='Alice')
    with pytest.raises(NotFound):
        lifecycle.join_session(session.id, participant_id='missing')
    with pytest.raises(MalformedMessage):
        lifecycle.join_session(session.id)
    lifecycle.cancel_session(session.id)
    with pytest.raises(InvalidTransition):
        lifecycle.join_session(session.id, display_name='Alice')


# ---- draft management ----

def test_cancel_only_from_draft(make_session, clock, sent):
    session = make_session()
    assert lifecycle.cancel_session(session.id).status == 'canceled'
    with pytest.raises(InvalidTransition):
        lifecycle.start_session(session.id)
    live = _live_session(make_session)
    with pytest.raises(InvalidTransition):
        lifecycle.cancel_session(live.id)


def test_update_draft(make_session, clock, sent):
    session = make_session(question='Old?', timer_seconds=30)
    updated = lifecycle.update_draft_session(session.id, question='New?', timer_seconds=60)
    assert (updated.question, updated.timer_seconds) == ('New?', 60)
    with pytest.raises(MalformedMessage):
        lifecycle.update_draft_session(session.id, timer_seconds=5)
    with pytest.raises(MalformedMessage):
        lifecycle.update_draft_session(session.id, question='   ')
    lifecycle.start_session(session.id)
    with pytest.raises(InvalidTransition):
        lifecycle.update_draft_session(session.id, question='Too late?')


def test_restart_clones_untouched_session(make_session, clock, sent):
    session = _live_session(make_session)
    fresh = lifecycle.restart_session(session.id)
    assert fresh.id != session.id
    assert fresh.status == 'draft'
    assert fresh.question == session.question

    alice = _player(session, 'Alice')
    lifecycle.submit_vote(session.id, alice.id, vote='YES')
    with pytest.raises(InvalidTransition):
        lifecycle.restart_session(session.id)


def test_timer_bounds(make_game, flask_app):
    game = make_game()
    for bad in (9, 301, '30', True, None):
        with pytest.raises(MalformedMessage):
            lifecycle.create_session(game.id, 'Q?', bad)
    assert lifecycle.create_session(game.id, 'Q?', 10).timer_seconds == 10
    assert lifecycle.create_session(game.id, 'Q?', 300).timer_seconds == 300


def test_recover_live_sessions(make_session, clock, sent, monkeypatch):
    armed = []
    monkeypatch.setattr(timers, 'arm', lambda session_id, ends_at: armed.append(session_id))
    stale = _live_session(make_session, timer_seconds=10)
    clock.advance(5)
    running = _live_session(make_session, timer_seconds=60)
    armed.clear()
    clock.advance(10)

    closed, rearmed = lifecycle.recover_live_sessions()
    assert closed == [stale.id]
    assert rearmed == [running.id]
    assert armed == [running.id]
    assert lifecycle.get_session_or_404(stale.id).status == 'closed'
    assert lifecycle.get_session_or_404(running.id).status == 'live'
