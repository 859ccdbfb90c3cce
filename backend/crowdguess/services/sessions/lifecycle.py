"""Session lifecycle: ``draft -> live -> closed`` (or ``draft -> canceled``).

Every transition follows the same shape: load the session, check the
precondition, then apply the change with a conditional UPDATE that repeats
the precondition in its WHERE clause. Whatever happened between the read
and the write (a submit, the deadline timer, a manual End on another
worker) is caught by that guard rather than by trusting the earlier read.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError

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
from crowdguess.realtime.protocol import SessionResults, SessionStarted, SessionTick
from crowdguess.utils.datetime_helpers import ensure_utc, isoformat, seconds_until, utcnow
from .scoring import Ballot, score_ballots, tally


@dataclass
class JoinResult:
    session: GameSession
    participant: Participant
    submission: Optional[Submission]


# ---- lookups & projections ----

def get_session_or_404(session_id: str) -> GameSession:
    session = db.session.get(GameSession, session_id)
    if session is None:
        raise NotFound('Session not found')
    return session


def time_remaining(session: GameSession) -> int:
    """Whole seconds left before the deadline, never negative."""
    return max(0, int(seconds_until(session.ends_at, utcnow())))


def session_snapshot(session: GameSession) -> dict:
    """The only projection of a session that may leave the server.

    While live it carries nothing but id, status, question and deadline:
    no counts and no one else's submission, whoever is asking.
    """
    if session.status == 'live':
        return {
            'id': session.id,
            'status': session.status,
            'question': session.question,
            'endsAt': isoformat(session.ends_at),
        }
    payload = session.to_dict()
    if session.status == 'closed' and session.results_computed:
        payload['results'] = session_results(session)
    return payload


def _session_submissions(session_id: str) -> List[Submission]:
    return Submission.query.filter_by(session_id=session_id).order_by(Submission.id).all()


def _ballot(submission: Submission) -> Ballot:
    return Ballot(
        participant_id=submission.participant_id,
        vote=submission.vote,
        guess=submission.guess_yes_count,
    )


def _assemble_results(session: GameSession, submissions: List[Submission], points: Dict[str, int]) -> dict:
    yes_count, no_count = tally(_ballot(s) for s in submissions)
    rows = []
    leaderboard_delta = []
    for s in submissions:
        if s.participant is None:
            continue
        awarded = points.get(s.participant_id, 0)
        rows.append({
            'participantId': s.participant_id,
            'displayName': s.participant.display_name,
            'vote': s.vote,
            'guess': s.guess_yes_count,
            'points': awarded,
        })
        leaderboard_delta.append({'participantId': s.participant_id, 'deltaPoints': awarded})
    return {
        'sessionId': session.id,
        'question': session.question,
        'yesCount': yes_count,
        'noCount': no_count,
        'rows': rows,
        'leaderboardDelta': leaderboard_delta,
    }


def session_results(session: GameSession) -> dict:
    """Results rebuilt from the stored ScoreRecords; never rescored."""
    if not session.results_computed:
        raise InvalidTransition('Results are not available until the session closes')
    stored = {r.participant_id: r.points for r in ScoreRecord.query.filter_by(session_id=session.id).all()}
    return _assemble_results(session, _session_submissions(session.id), stored)


# ---- validation ----

def validate_question(question) -> str:
    if not isinstance(question, str) or not question.strip():
        raise MalformedMessage('Question is required')
    return question.strip()


def validate_timer_seconds(value) -> int:
    low = int(current_app.config.get('TIMER_MIN_SEC', 10))
    high = int(current_app.config.get('TIMER_MAX_SEC', 300))
    if isinstance(value, bool) or not isinstance(value, int) or not (low <= value <= high):
        raise MalformedMessage(f'timerSeconds must be a whole number between {low} and {high}')
    return value


# ---- draft management ----

def create_session(game_id: str, question, timer_seconds) -> GameSession:
    session = GameSession(
        game_id=game_id,
        question=validate_question(question),
        timer_seconds=validate_timer_seconds(timer_seconds),
    )
    db.session.add(session)
    db.session.commit()
    current_app.logger.info(f"[create] session={session.id} game={game_id} timer={session.timer_seconds}s")
    return session


def update_draft_session(session_id: str, question=None, timer_seconds=None) -> GameSession:
    session = get_session_or_404(session_id)
    if session.status != 'draft':
        raise InvalidTransition('Can only edit draft sessions')
    changes = {}
    if question is not None:
        changes['question'] = validate_question(question)
    if timer_seconds is not None:
        changes['timer_seconds'] = validate_timer_seconds(timer_seconds)
    if not changes:
        return session
    updated = GameSession.query.filter_by(id=session_id, status='draft').update(changes, synchronize_session=False)
    if not updated:
        db.session.rollback()
        raise InvalidTransition('Can only edit draft sessions')
    db.session.commit()
    return session


def restart_session(session_id: str) -> GameSession:
    """Clone a session that nobody has submitted to into a fresh draft."""
    session = get_session_or_404(session_id)
    if Submission.query.filter_by(session_id=session_id).first():
        raise InvalidTransition('Cannot restart session with existing submissions')
    fresh = GameSession(game_id=session.game_id, question=session.question, timer_seconds=session.timer_seconds)
    db.session.add(fresh)
    db.session.commit()
    current_app.logger.info(f"[restart] session={session_id} -> {fresh.id}")
    return fresh


def cancel_session(session_id: str) -> GameSession:
    session = get_session_or_404(session_id)
    if session.status != 'draft':
        raise InvalidTransition(f'Cannot cancel a {session.status} session')
    updated = GameSession.query.filter_by(id=session_id, status='draft').update(
        {'status': 'canceled'}, synchronize_session=False
    )
    if not updated:
        db.session.rollback()
        raise InvalidTransition('Session is no longer a draft')
    db.session.commit()
    timers.cancel(session_id)
    current_app.logger.info(f"[cancel] session={session_id}")
    return session


# ---- transitions ----

def start_session(session_id: str) -> GameSession:
    session = get_session_or_404(session_id)
    if session.status != 'draft':
        raise InvalidTransition(f'Cannot start a {session.status} session')
    started_at = utcnow()
    ends_at = started_at + timedelta(seconds=session.timer_seconds)
    claimed = GameSession.query.filter_by(id=session_id, status='draft').update(
        {'status': 'live', 'started_at': started_at, 'ends_at': ends_at},
        synchronize_session=False,
    )
    if not claimed:
        db.session.rollback()
        raise InvalidTransition('Session is no longer a draft')
    db.session.commit()
    current_app.logger.info(
        f"[start] session={session_id} timer={session.timer_seconds}s ends_at={ends_at.isoformat()}"
    )

    timers.arm(session_id, ends_at)
    rooms.broadcast(session_id, SessionStarted(
        session=session_snapshot(session),
        time_remaining=session.timer_seconds,
    ))
    return session


def _require_accepting(session: GameSession) -> None:
    if session.status != 'live':
        raise SessionNotLive('Session is not live')
    if seconds_until(session.ends_at, utcnow()) <= 0:
        raise SessionExpired('Session has expired')


def session_status_query(session_id: str):
    """Status of one session, read under a row lock (``SELECT ... FOR UPDATE``)."""
    return db.session.query(GameSession.status).filter_by(id=session_id).with_for_update()


def _locked_status(session_id: str) -> Optional[str]:
    # Blocks behind an uncommitted close; a close that starts later waits for our commit
    return session_status_query(session_id).scalar()


def submit_vote(session_id: str, participant_id: str, vote: Optional[str] = None, guess: Optional[int] = None) -> Submission:
    """Merge a vote and/or guess into the participant's submission.

    Fields left as ``None`` keep their stored value; ``submitted_at`` always advances.
    """
    session = get_session_or_404(session_id)
    _require_accepting(session)
    participant = db.session.get(Participant, participant_id)
    if participant is None or participant.game_id != session.game_id:
        raise NotFound('Participant not found')

    for attempt in (1, 2):
        submission = Submission.query.filter_by(session_id=session_id, participant_id=participant_id).first()
        if submission is None:
            submission = Submission(session_id=session_id, participant_id=participant_id)
            db.session.add(submission)
        if vote is not None:
            submission.vote = vote
        if guess is not None:
            submission.guess_yes_count = guess
        submission.submitted_at = utcnow()
        try:
            db.session.flush()
            break
        except IntegrityError:
            # A concurrent first submit inserted the row; merge into it instead
            db.session.rollback()
            if attempt == 2:
                raise

    # Commit-time guard: the session may have closed while we were writing
    if _locked_status(session_id) != 'live':
        db.session.rollback()
        raise SessionNotLive('Session is not live')
    db.session.commit()
    return submission


def close_session(session_id: str) -> Tuple[dict, bool]:
    """Close a live session and score it exactly once.

    Returns ``(results, closed_now)``. Only the caller whose guarded UPDATE
    claimed the transition scores; every other caller, concurrent or later,
    gets the stored results and ``closed_now = False``.
    """
    session = get_session_or_404(session_id)
    if session.results_computed:
        return session_results(session), False
    if session.status != 'live':
        raise InvalidTransition(f'Cannot close a {session.status} session')

    claimed = GameSession.query.filter_by(id=session_id, status='live', results_computed=False).update(
        {'status': 'closed', 'ended_at': utcnow(), 'results_computed': True},
        synchronize_session=False,
    )
    if not claimed:
        db.session.rollback()
        session = get_session_or_404(session_id)
        if session.results_computed:
            return session_results(session), False
        raise InvalidTransition(f'Cannot close a {session.status} session')

    submissions = _session_submissions(session_id)
    sheet = score_ballots(_ballot(s) for s in submissions)
    for participant_id, points in sheet.points.items():
        db.session.add(ScoreRecord(session_id=session_id, participant_id=participant_id, points=points))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.warning(f"[close-race] session={session_id} scores already stored")
        return session_results(get_session_or_404(session_id)), False

    current_app.logger.info(
        f"[close] session={session_id} yes={sheet.yes_count} no={sheet.no_count} scored={len(sheet.points)}"
    )
    return _assemble_results(session, submissions, sheet.points), True


def finish_session(session_id: str) -> dict:
    """Close the session and reveal results to its room.

    The reveal goes out only from the call that performed the close, so a
    timer/End race yields a single ``session:results`` broadcast.
    """
    results, closed_now = close_session(session_id)
    timers.release(session_id)
    if closed_now:
        rooms.broadcast(session_id, SessionResults(results=results))
    return results


def end_session(session_id: str) -> dict:
    """Admin-triggered early close."""
    session = get_session_or_404(session_id)
    if session.status not in ('live', 'closed'):
        raise InvalidTransition(f'Cannot end a {session.status} session')
    # Disarm the deadline first so it cannot fire into the close below
    timers.cancel(session_id)
    return finish_session(session_id)


def expire_session(session_id: str) -> Optional[dict]:
    """Deadline timer entry point."""
    try:
        return finish_session(session_id)
    except (NotFound, InvalidTransition) as exc:
        current_app.logger.info(f"[expire-skip] session={session_id} {exc.message}")
        return None


def tick_session(session_id: str) -> bool:
    """Broadcast the countdown; False once the session has left ``live``."""
    session = db.session.get(GameSession, session_id)
    if session is None or session.status != 'live':
        return False
    rooms.broadcast(session_id, SessionTick(time_remaining=time_remaining(session)))
    return True


def join_session(session_id: str, participant_id: Optional[str] = None, display_name: Optional[str] = None) -> JoinResult:
    session = get_session_or_404(session_id)
    if session.status == 'canceled':
        raise InvalidTransition('Session was canceled')

    participant = None
    if participant_id:
        participant = db.session.get(Participant, participant_id)
        if participant is None or participant.game_id != session.game_id:
            raise NotFound('Participant not found')
    elif display_name:
        participant = Participant.query.filter_by(game_id=session.game_id, display_name=display_name).first()
    else:
        raise MalformedMessage('participantId or displayName is required')

    submission = None
    if participant is not None:
        submission = Submission.query.filter_by(session_id=session_id, participant_id=participant.id).first()

    # Returning participants are never locked out by the cutoff
    if session.status == 'live' and submission is None:
        cutoff = int(current_app.config.get('JOIN_CUTOFF_SEC', 10))
        remaining = seconds_until(session.ends_at, utcnow())
        if remaining < cutoff:
            current_app.logger.info(f"[join-cutoff] session={session_id} remaining={remaining:.1f}s")
            raise JoinWindowClosed(f'Joining closed - less than {cutoff} seconds remaining')

    if participant is None:
        participant, _ = get_or_create_participant(session.game_id, display_name)
    return JoinResult(session=session, participant=participant, submission=submission)


def get_or_create_participant(game_id: str, display_name: str, owner_admin_user_id: Optional[str] = None) -> Tuple[Participant, bool]:
    participant = Participant.query.filter_by(game_id=game_id, display_name=display_name).first()
    if participant:
        return participant, False
    participant = Participant(game_id=game_id, display_name=display_name, owner_admin_user_id=owner_admin_user_id)
    db.session.add(participant)
    try:
        db.session.commit()
    except IntegrityError:
        # Same name created concurrently; reuse it
        db.session.rollback()
        participant = Participant.query.filter_by(game_id=game_id, display_name=display_name).first()
        if participant is None:
            raise
        return participant, False
    return participant, True


def recover_live_sessions() -> Tuple[List[str], List[str]]:
    """Re-arm or close sessions left live by a previous process.

    Returns the ids that were closed and the ids whose timers were re-armed.
    """
    closed, armed = [], []
    for session in GameSession.query.filter_by(status='live').all():
        if seconds_until(session.ends_at, utcnow()) <= 0:
            finish_session(session.id)
            closed.append(session.id)
        else:
            timers.arm(session.id, ensure_utc(session.ends_at))
            armed.append(session.id)
    current_app.logger.info(f"[recover] closed={len(closed)} rearmed={len(armed)}")
    return closed, armed
