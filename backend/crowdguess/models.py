from crowdguess import db
from crowdguess.utils.datetime_helpers import utcnow, isoformat
from flask_login import UserMixin
import string
import random
import uuid

SESSION_STATUSES = ('draft', 'live', 'closed', 'canceled')
VOTES = ('YES', 'NO')


def _new_id() -> str:
    return str(uuid.uuid4())


class AdminUser(UserMixin, db.Model):
    __tablename__ = 'admin_user'
    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(64), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            'adminId': self.id,
            'name': self.name,
            'email': self.email,
        }


def generate_game_code(length=6):
    """Generate a unique, short game code."""
    while True:
        code = ''.join(random.choices(string.ascii_uppercase + string.digits, k=length))
        if not Game.query.filter_by(code=code).first():
            return code


class Game(db.Model):
    __tablename__ = 'game'
    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(6), unique=True, nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default='active')  # active, archived
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    sessions = db.relationship('GameSession', back_populates='game', lazy='dynamic')
    participants = db.relationship('Participant', back_populates='game', lazy='dynamic')

    def __init__(self, **kwargs):
        super(Game, self).__init__(**kwargs)
        if not self.code:
            self.code = generate_game_code()

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'status': self.status,
            'createdAt': isoformat(self.created_at),
        }


class GameSession(db.Model):
    """One timed question round."""
    __tablename__ = 'game_session'
    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    game_id = db.Column(db.String(36), db.ForeignKey('game.id', ondelete='CASCADE'), nullable=False, index=True)
    question = db.Column(db.Text, nullable=False)
    timer_seconds = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default='draft')  # draft, live, closed, canceled
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    results_computed = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    game = db.relationship('Game', back_populates='sessions')

    def to_dict(self):
        """Full projection. Never send this for a live session; see ``session_snapshot``."""
        return {
            'id': self.id,
            'gameId': self.game_id,
            'question': self.question,
            'timerSeconds': self.timer_seconds,
            'status': self.status,
            'startedAt': isoformat(self.started_at),
            'endsAt': isoformat(self.ends_at),
            'endedAt': isoformat(self.ended_at),
            'resultsComputed': self.results_computed,
            'createdAt': isoformat(self.created_at),
        }


class Participant(db.Model):
    __tablename__ = 'participant'
    __table_args__ = (
        db.UniqueConstraint('game_id', 'display_name', name='uq_participant_game_name'),
    )
    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    game_id = db.Column(db.String(36), db.ForeignKey('game.id', ondelete='CASCADE'), nullable=False, index=True)
    display_name = db.Column(db.String(50), nullable=False)
    # Weak link for "play as participant"; the admin never owns the participant's lifecycle
    owner_admin_user_id = db.Column(db.String(36), db.ForeignKey('admin_user.id', ondelete='SET NULL'), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    game = db.relationship('Game', back_populates='participants')

    def to_dict(self):
        return {
            'id': self.id,
            'gameId': self.game_id,
            'displayName': self.display_name,
            'ownerAdminUserId': self.owner_admin_user_id,
        }


class Submission(db.Model):
    __tablename__ = 'submission'
    __table_args__ = (
        db.UniqueConstraint('session_id', 'participant_id', name='uq_submission_session_participant'),
    )
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(36), db.ForeignKey('game_session.id', ondelete='CASCADE'), nullable=False, index=True)
    participant_id = db.Column(db.String(36), db.ForeignKey('participant.id', ondelete='CASCADE'), nullable=False)
    vote = db.Column(db.String(3), nullable=True)  # YES, NO or NULL
    guess_yes_count = db.Column(db.Integer, nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    participant = db.relationship('Participant')

    def to_dict(self):
        return {
            'sessionId': self.session_id,
            'participantId': self.participant_id,
            'vote': self.vote,
            'guessYesCount': self.guess_yes_count,
            'submittedAt': isoformat(self.submitted_at),
        }


class ScoreRecord(db.Model):
    __tablename__ = 'session_points'
    __table_args__ = (
        db.UniqueConstraint('session_id', 'participant_id', name='uq_session_points_session_participant'),
    )
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(36), db.ForeignKey('game_session.id', ondelete='CASCADE'), nullable=False, index=True)
    participant_id = db.Column(db.String(36), db.ForeignKey('participant.id', ondelete='CASCADE'), nullable=False)
    points = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            'sessionId': self.session_id,
            'participantId': self.participant_id,
            'points': self.points,
        }
