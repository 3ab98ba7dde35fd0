"""
Steam login through DepotDownloader.

At most one login runs per process.  ``start()`` registers the session
before the worker thread exists, so a Steam Guard code submitted the moment
``start()`` returns always finds its session.

Phases::

    CredentialsSubmitted -> AwaitingTwoFactor -> CredentialsSubmitted -> ...
                         -> AwaitingMobileConfirmation
                         -> Succeeded | Failed

A successful login is remembered in ``login_state.json`` so later depot
downloads can run non-interactively with ``-remember-password``.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from depot_downloader import POLL_INTERVAL, DepotDownloader, ProcessEnded
from depot_output import DepotEventKind, DepotLineTranslator
from errors import AlreadyRunning, InvalidSession, LauncherError, SubprocessFailure
from progress import DEPOT_DOWNLOADER, DepotDownloaderPayload, EventBus

# Seconds of silence after "connecting"/"logging in" output before a prompt is assumed.
LOGIN_PROGRESS_IDLE = 6.0
# Nothing is assumed during the first few seconds of a run.
IDLE_GRACE = 5.0

TWO_FACTOR_MESSAGE = "Steam Guard code required. Enter code then submit."

_log = logging.getLogger(__name__)


class LoginPhase(Enum):
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    AWAITING_TWO_FACTOR = "awaiting_two_factor"
    AWAITING_MOBILE_CONFIRMATION = "awaiting_mobile_confirmation"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (LoginPhase.SUCCEEDED, LoginPhase.FAILED)


@dataclass
class LoginState:
    is_logged_in: bool = False
    username: str | None = None


def load_login_state(path: Path) -> LoginState:
    if not path.exists():
        return LoginState()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return LoginState(bool(data.get("is_logged_in")), data.get("username"))
    except (OSError, ValueError, AttributeError) as e:
        _log.warning("Could not read login state %s: %s", path, e)
        return LoginState()


def save_login_state(path: Path, state: LoginState):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(state), indent=2), encoding="utf-8")


@dataclass
class LoginSession:
    session_id: int
    username: str
    phase: LoginPhase = LoginPhase.CREDENTIALS_SUBMITTED
    error: str | None = None
    pending_code: str | None = field(default=None, repr=False)
    cancel: threading.Event = field(default_factory=threading.Event, repr=False)
    done: threading.Event = field(default_factory=threading.Event, repr=False)


class _LoginFailed(LauncherError):
    pass


class AuthManager:
    """Owns the process-wide login slot and the remembered login state."""

    def __init__(
        self,
        downloader: DepotDownloader,
        bus: EventBus | None = None,
        idle_prompt: float | None = None,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.downloader = downloader
        self.bus = bus or EventBus()
        settings = downloader.settings
        self.idle_prompt = settings.login_idle_prompt if idle_prompt is None else idle_prompt
        self.timeout = settings.login_timeout if timeout is None else timeout
        self.clock = clock
        self.state_path = downloader.paths.login_state_path
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._session: LoginSession | None = None
        self._history: dict[int, LoginSession] = {}

    # ── Remembered login ──────────────────────────────────────────────

    def login_state(self) -> LoginState:
        return load_login_state(self.state_path)

    @property
    def is_logged_in(self) -> bool:
        state = self.login_state()
        return state.is_logged_in and bool(state.username)

    def logout(self):
        with self._lock:
            session = self._session
        if session is not None:
            session.cancel.set()
        save_login_state(self.state_path, LoginState())
        _log.info("Cleared remembered Steam login")

    # ── Sessions ──────────────────────────────────────────────────────

    def current_session(self) -> LoginSession | None:
        with self._lock:
            return self._session

    def start(self, username: str, password: str) -> int:
        """Begin a login and return its session id immediately.

        Raises ``AlreadyRunning`` if another login holds the slot.
        """
        with self._lock:
            if self._session is not None:
                raise AlreadyRunning()
            session = LoginSession(next(self._ids), username)
            self._session = session
            self._history[session.session_id] = session

        worker = threading.Thread(
            target=self._run,
            args=(session, password),
            name=f"steam-login-{session.session_id}",
            daemon=True,
        )
        worker.start()
        _log.info("Login session %d started for %s", session.session_id, username)
        return session.session_id

    def submit_code(self, session_id: int, code: str):
        code = code.strip()
        with self._lock:
            session = self._session
            if session is None or session.session_id != session_id:
                raise InvalidSession("That login session has ended. Please login again.")
            if not code:
                raise InvalidSession("The Steam Guard code is empty.")
            if session.phase not in (
                LoginPhase.CREDENTIALS_SUBMITTED,
                LoginPhase.AWAITING_TWO_FACTOR,
            ):
                raise InvalidSession(
                    f"Login session {session_id} is not waiting for a code ({session.phase.value})."
                )
            session.pending_code = code
        self._emit("output", session_id, f"Steam Guard code received (len={len(code)}).")

    def session(self, session_id: int) -> LoginSession | None:
        with self._lock:
            return self._history.get(session_id)

    def wait(self, session_id: int, timeout: float | None = None) -> LoginSession | None:
        """Block until the session finishes; returns it (or None if unknown)."""
        session = self.session(session_id)
        if session is None:
            return None
        session.done.wait(timeout)
        return session

    # ── Worker ────────────────────────────────────────────────────────

    def _emit(self, kind: str, session_id: int | None = None, message: str | None = None):
        self.bus.emit(DEPOT_DOWNLOADER, DepotDownloaderPayload(kind, session_id, message))

    def _set_phase(self, session: LoginSession, phase: LoginPhase):
        with self._lock:
            session.phase = phase
        _log.info("Login session %d -> %s", session.session_id, phase.value)

    def _run(self, session: LoginSession, password: str):
        try:
            self._drive(session, password)
        except LauncherError as e:
            self._fail(session, e.message)
        except Exception as e:
            _log.exception("Login session %d crashed", session.session_id)
            self._fail(session, f"Login failed: {e}")
        finally:
            with self._lock:
                if self._session is session:
                    self._session = None
            session.done.set()

    def _fail(self, session: LoginSession, message: str):
        session.error = message
        self._set_phase(session, LoginPhase.FAILED)
        self._emit("login_failed", session.session_id, message)

    def _take_code(self, session: LoginSession) -> str | None:
        with self._lock:
            if session.phase is not LoginPhase.AWAITING_TWO_FACTOR or not session.pending_code:
                return None
            code, session.pending_code = session.pending_code, None
            session.phase = LoginPhase.CREDENTIALS_SUBMITTED
            return code

    def _request_code(self, session: LoginSession, message: str = TWO_FACTOR_MESSAGE):
        self._set_phase(session, LoginPhase.AWAITING_TWO_FACTOR)
        self._emit("needs_two_factor", session.session_id, message)

    def _drive(self, session: LoginSession, password: str):
        proc = self.downloader.start_login(session.username, password)
        translator = DepotLineTranslator("login")
        started = last_output = self.clock()
        saw_login_progress = False
        prompted = False

        try:
            while True:
                if session.cancel.is_set():
                    raise _LoginFailed("Login cancelled.")

                code = self._take_code(session)
                if code:
                    self._emit("output", session.session_id, "Submitting Steam Guard code...")
                    proc.send_line(code)

                try:
                    raw = proc.read_line(POLL_INTERVAL)
                except ProcessEnded:
                    break

                now = self.clock()
                if raw is not None:
                    last_output = now
                    for event in translator.translate(raw):
                        kind = event.kind
                        if kind is DepotEventKind.OUTPUT:
                            self._emit("output", session.session_id, event.line)
                        elif kind is DepotEventKind.LOGIN_PROGRESS:
                            saw_login_progress = True
                        elif kind is DepotEventKind.LOGIN_FAILED:
                            raise _LoginFailed(event.detail or event.line)
                        elif kind is DepotEventKind.TWO_FACTOR_INCORRECT:
                            self._emit("two_factor_incorrect", session.session_id, event.line)
                            self._request_code(session, "The previous Steam Guard code was incorrect. Enter a new code.")
                            prompted = True
                        elif kind is DepotEventKind.MOBILE_CONFIRMATION_REQUIRED:
                            if session.phase is not LoginPhase.AWAITING_MOBILE_CONFIRMATION:
                                self._set_phase(session, LoginPhase.AWAITING_MOBILE_CONFIRMATION)
                                self._emit("needs_mobile_confirmation", session.session_id)
                        elif kind is DepotEventKind.TWO_FACTOR_REQUIRED:
                            if not prompted and session.phase is LoginPhase.CREDENTIALS_SUBMITTED:
                                prompted = True
                                self._request_code(session)

                # The prompt may be printed without a trailing newline.
                threshold = LOGIN_PROGRESS_IDLE if saw_login_progress else self.idle_prompt
                if (
                    not prompted
                    and session.phase is LoginPhase.CREDENTIALS_SUBMITTED
                    and now - last_output >= threshold
                    and now - started > IDLE_GRACE
                ):
                    prompted = True
                    self._request_code(session)

                if now - started > self.timeout:
                    raise _LoginFailed("Login timed out.")

            exit_code = proc.wait()
        finally:
            proc.kill()

        if exit_code != 0:
            raise SubprocessFailure(f"Login failed (exit code: {exit_code}).", exit_code=exit_code)

        save_login_state(self.state_path, LoginState(True, session.username))
        self._set_phase(session, LoginPhase.SUCCEEDED)
        self._emit("login_success", session.session_id)
        _log.info("Saved login state for %s", session.username)
