"""
Tests for the Steam login state machine.
"""

import itertools
import time

import pytest

from auth_session import AuthManager, LoginPhase, LoginState, load_login_state, save_login_state
from depot_downloader import DepotDownloader
from errors import AlreadyRunning, InvalidSession
from progress import DEPOT_DOWNLOADER, EventBus
from tests.conftest import FakeDepotProcess

TWO_FACTOR_LINE = "Please enter your 2 factor auth code from your authenticator app: "


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class FakeDownloader(DepotDownloader):
    def __init__(self, settings, proc):
        super().__init__(settings)
        self.proc = proc
        self.logins = []

    def start_login(self, username, password):
        self.logins.append(username)
        return self.proc


def make_auth(settings, proc, **kwargs):
    bus = EventBus()
    events = []
    bus.subscribe(lambda name, payload: events.append(payload) if name == DEPOT_DOWNLOADER else None)
    auth = AuthManager(FakeDownloader(settings, proc), bus, **kwargs)
    return auth, events


def stepping_clock(step):
    counter = itertools.count()
    return lambda: next(counter) * step


def test_submit_code_right_after_start_is_accepted(settings):
    proc = FakeDepotProcess(auto_exit=False)
    auth, events = make_auth(settings, proc)
    sid = auth.start("alice", "hunter2")
    auth.submit_code(sid, "ABCDE")  # must not raise

    proc.push(TWO_FACTOR_LINE)
    assert wait_for(lambda: proc.sent == ["ABCDE"])
    proc.finish(0)

    session = auth.wait(sid, 5)
    assert session.phase is LoginPhase.SUCCEEDED
    assert auth.is_logged_in
    assert auth.login_state() == LoginState(True, "alice")
    assert any(e.type == "needs_two_factor" for e in events)
    assert events[-1].type == "login_success"


def test_second_start_already_running(settings):
    proc = FakeDepotProcess(auto_exit=False)
    auth, _ = make_auth(settings, proc)
    sid = auth.start("alice", "pw")
    with pytest.raises(AlreadyRunning):
        auth.start("bob", "pw")
    proc.finish(0)
    auth.wait(sid, 5)


def test_slot_freed_after_finish(settings):
    auth, _ = make_auth(settings, FakeDepotProcess(exit_code=0))
    sid = auth.start("alice", "pw")
    assert auth.wait(sid, 5).phase is LoginPhase.SUCCEEDED
    assert wait_for(lambda: auth.current_session() is None)
    with pytest.raises(InvalidSession):
        auth.submit_code(sid, "12345")


def test_empty_code_rejected(settings):
    proc = FakeDepotProcess(auto_exit=False)
    auth, _ = make_auth(settings, proc)
    sid = auth.start("alice", "pw")
    with pytest.raises(InvalidSession):
        auth.submit_code(sid, "   ")
    proc.finish(0)
    auth.wait(sid, 5)


def test_unknown_session_rejected(settings):
    proc = FakeDepotProcess(auto_exit=False)
    auth, _ = make_auth(settings, proc)
    sid = auth.start("alice", "pw")
    with pytest.raises(InvalidSession):
        auth.submit_code(sid + 1, "12345")
    proc.finish(0)
    auth.wait(sid, 5)


def test_mobile_confirmation_takes_no_code(settings):
    proc = FakeDepotProcess(auto_exit=False)
    auth, events = make_auth(settings, proc)
    sid = auth.start("alice", "pw")
    proc.push("Use the Steam Mobile App to confirm your sign in...")
    assert wait_for(lambda: auth.session(sid).phase is LoginPhase.AWAITING_MOBILE_CONFIRMATION)
    with pytest.raises(InvalidSession):
        auth.submit_code(sid, "12345")
    proc.finish(0)
    assert auth.wait(sid, 5).phase is LoginPhase.SUCCEEDED
    assert any(e.type == "needs_mobile_confirmation" for e in events)


def test_incorrect_code_asks_again(settings):
    proc = FakeDepotProcess(auto_exit=False)
    auth, events = make_auth(settings, proc)
    sid = auth.start("alice", "pw")
    proc.push(TWO_FACTOR_LINE)
    assert wait_for(lambda: auth.session(sid).phase is LoginPhase.AWAITING_TWO_FACTOR)
    auth.submit_code(sid, "WRONG")
    assert wait_for(lambda: proc.sent == ["WRONG"])
    proc.push("The previous 2-factor auth code you have provided is incorrect.")
    assert wait_for(lambda: auth.session(sid).phase is LoginPhase.AWAITING_TWO_FACTOR)
    auth.submit_code(sid, "RIGHT")
    assert wait_for(lambda: proc.sent == ["WRONG", "RIGHT"])
    proc.finish(0)
    assert auth.wait(sid, 5).phase is LoginPhase.SUCCEEDED
    assert any(e.type == "two_factor_incorrect" for e in events)


def test_idle_output_raises_two_factor_prompt(settings):
    proc = FakeDepotProcess(["Connecting to Steam3..."], auto_exit=False)
    auth, events = make_auth(settings, proc, clock=stepping_clock(5.0), timeout=1e9)
    sid = auth.start("alice", "pw")
    assert wait_for(lambda: auth.session(sid).phase is LoginPhase.AWAITING_TWO_FACTOR)
    proc.finish(0)
    auth.wait(sid, 5)
    assert any(e.type == "needs_two_factor" for e in events)


def test_timeout_fails_and_kills(settings):
    proc = FakeDepotProcess(auto_exit=False)
    auth, events = make_auth(settings, proc, clock=stepping_clock(5.0), timeout=1.0)
    sid = auth.start("alice", "pw")
    session = auth.wait(sid, 5)
    assert session.phase is LoginPhase.FAILED
    assert session.error == "Login timed out."
    assert proc.killed
    assert not auth.is_logged_in


def test_auth_failure_line(settings):
    proc = FakeDepotProcess(
        ["Failed to authenticate with Steam: No code was provided by the authenticator."],
        auto_exit=False,
    )
    auth, events = make_auth(settings, proc)
    session = auth.wait(auth.start("alice", "pw"), 5)
    assert session.phase is LoginPhase.FAILED
    assert events[-1].type == "login_failed"


def test_nonzero_exit_fails(settings):
    auth, _ = make_auth(settings, FakeDepotProcess(exit_code=5))
    session = auth.wait(auth.start("alice", "pw"), 5)
    assert session.phase is LoginPhase.FAILED
    assert session.error == "Login failed (exit code: 5)."


def test_logout_cancels_and_forgets(settings, paths):
    save_login_state(paths.login_state_path, LoginState(True, "alice"))
    proc = FakeDepotProcess(auto_exit=False)
    auth, _ = make_auth(settings, proc)
    sid = auth.start("alice", "pw")
    auth.logout()
    session = auth.wait(sid, 5)
    assert session.phase is LoginPhase.FAILED
    assert load_login_state(paths.login_state_path) == LoginState()


def test_corrupt_login_state_means_logged_out(paths):
    paths.login_state_path.parent.mkdir(parents=True)
    paths.login_state_path.write_text("nope", encoding="utf-8")
    assert load_login_state(paths.login_state_path) == LoginState()
