"""Errors raised by session operations.

Every error carries a stable ``code`` for clients and the HTTP status the
REST layer answers with. Socket handlers send the same ``message``/``code``
pair back on the originating connection as an ``error`` event.
"""


class SessionError(Exception):
    code = 'session_error'
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'message': self.message, 'code': self.code}


class NotFound(SessionError):
    code = 'not_found'
    status_code = 404


class InvalidTransition(SessionError):
    """Operation attempted against the wrong session status."""
    code = 'invalid_transition'
    status_code = 409


class SessionNotLive(InvalidTransition):
    code = 'session_not_live'


class SessionExpired(SessionError):
    """Deadline passed but the close has not been processed yet."""
    code = 'session_expired'
    status_code = 409


class JoinWindowClosed(SessionError):
    code = 'join_window_closed'
    status_code = 403


class MalformedMessage(SessionError):
    code = 'malformed_message'
    status_code = 400
