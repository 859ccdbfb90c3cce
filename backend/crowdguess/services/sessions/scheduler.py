import threading
from typing import Callable, Dict, List, Optional

from crowdguess.utils.datetime_helpers import seconds_until, utcnow


class _ArmedSession:
    """The deadline and tick timers of one live session."""

    __slots__ = ('session_id', 'ends_at', 'cancelled')

    def __init__(self, session_id: str, ends_at) -> None:
        self.session_id = session_id
        self.ends_at = ends_at
        self.cancelled = False


class SessionTimerScheduler:
    """Owns one deadline timer and one countdown ticker per live session.

    - No-ops in TESTING mode unless ENABLE_SCHEDULER_IN_TESTS is set
    - Ensures a single pair of timers per session id
    - The deadline timer calls ``on_expire(session_id)`` once; a failure is
      logged and retried CLOSE_RETRY_ATTEMPTS times before giving up
    - The ticker calls ``on_tick(session_id)`` every TICK_INTERVAL_SEC until it
      returns False (the session is no longer live) or the pair is cancelled
    """

    def __init__(self) -> None:
        self._armed: Dict[str, _ArmedSession] = {}
        self._lock = threading.Lock()
        self._app = None
        self._spawn: Optional[Callable] = None
        self._sleep: Optional[Callable] = None
        self._on_expire: Optional[Callable[[str], object]] = None
        self._on_tick: Optional[Callable[[str], bool]] = None
        self._enabled = True

    def init_app(self, app, socketio, on_expire, on_tick) -> None:
        self._app = app
        self._spawn = socketio.start_background_task
        self._sleep = socketio.sleep
        self._on_expire = on_expire
        self._on_tick = on_tick
        self._enabled = not (app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'))
        app.extensions['session_timers'] = self

    @property
    def tick_interval(self) -> float:
        return float(self._app.config.get('TICK_INTERVAL_SEC', 1))

    def arm(self, session_id: str, ends_at) -> bool:
        if not self._enabled:
            self._app.logger.debug(f"[timer-disabled] session={session_id}")
            return False
        with self._lock:
            if session_id in self._armed:
                self._app.logger.info(f"[timer-skip] session={session_id} already armed")
                return False
            handle = _ArmedSession(session_id, ends_at)
            self._armed[session_id] = handle
        self._app.logger.info(
            f"[timer-set] session={session_id} ends_at={ends_at.isoformat()} "
            f"remaining={seconds_until(ends_at, utcnow()):.1f}s"
        )
        self._spawn(self._run_deadline, handle)
        self._spawn(self._run_ticker, handle)
        return True

    def cancel(self, session_id: str) -> bool:
        """Cancel both timers of a session; the pending deadline will not fire."""
        with self._lock:
            handle = self._armed.pop(session_id, None)
        if handle is None:
            return False
        handle.cancelled = True
        self._app.logger.info(f"[timer-cancel] session={session_id}")
        return True

    def release(self, session_id: str) -> None:
        """Stop tracking a session that has left ``live``."""
        with self._lock:
            handle = self._armed.pop(session_id, None)
        if handle is not None:
            handle.cancelled = True

    def is_armed(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._armed

    def armed_sessions(self) -> List[str]:
        with self._lock:
            return list(self._armed)

    def _run_deadline(self, handle: _ArmedSession) -> None:
        app = self._app
        # Sleep in tick-sized steps so a cancelled timer is released promptly
        while not handle.cancelled:
            remaining = seconds_until(handle.ends_at, utcnow())
            if remaining <= 0:
                break
            self._sleep(min(remaining, self.tick_interval))
        if handle.cancelled:
            app.logger.info(f"[timer-abort] session={handle.session_id} cancelled before deadline")
            return

        app.logger.info(f"[timer-fire] session={handle.session_id}")
        attempts = max(1, int(app.config.get('CLOSE_RETRY_ATTEMPTS', 3)))
        delay = float(app.config.get('CLOSE_RETRY_DELAY_SEC', 2))
        try:
            for attempt in range(1, attempts + 1):
                try:
                    with app.app_context():
                        self._on_expire(handle.session_id)
                    return
                except Exception:
                    app.logger.exception(
                        f"[timer-fire-failed] session={handle.session_id} attempt={attempt}/{attempts}"
                    )
                if attempt < attempts:
                    self._sleep(delay)
            app.logger.error(f"[timer-giveup] session={handle.session_id} still live after {attempts} attempts")
        finally:
            handle.cancelled = True
            with self._lock:
                if self._armed.get(handle.session_id) is handle:
                    del self._armed[handle.session_id]

    def _run_ticker(self, handle: _ArmedSession) -> None:
        app = self._app
        while not handle.cancelled:
            try:
                with app.app_context():
                    still_live = self._on_tick(handle.session_id)
            except Exception:
                app.logger.exception(f"[tick-failed] session={handle.session_id}")
                still_live = True
            if not still_live:
                break
            self._sleep(self.tick_interval)
        app.logger.debug(f"[tick-stop] session={handle.session_id}")
