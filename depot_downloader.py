"""
DepotDownloader subprocess wrapper.

Two kinds of runs:

* an interactive login (``-manifest-only`` into a scratch dir) whose stdin
  stays open so a Steam Guard code can be typed in; driven by
  ``auth_session``;
* a non-interactive depot download that relies on ``-remember-password``
  from an earlier login.

Both run with the depot config directory as working directory, which is
where DepotDownloader keeps its remembered credentials.

The tool itself is fetched from the SteamRE GitHub release on first use
(``ensure_installed``).
"""

from __future__ import annotations

import logging
import os
import platform
import queue
import stat
import subprocess
import threading
import time
import zipfile
from pathlib import Path, PurePosixPath
from typing import Callable

import requests

from archive_utils import extract_mapped
from depot_output import BASIS_POINTS, DepotEventKind, DepotLineTranslator
from errors import AuthRequired, Cancelled, LauncherError, SubprocessFailure
from settings import LauncherSettings

PATCH_MARKER = ".hq_launcher_ipc"
LOGIN_CACHE_DIRNAME = "_login_cache"

ARCHIVE_NAME = "downloader.zip"
CHUNK_SIZE = 64 * 1024

POLL_INTERVAL = 0.2
# Silence before any progress means the tool sits at a login prompt.
PROMPT_SILENCE = 15.0
# Silence after progress started; large files can take a while.
STALL_SILENCE = 300.0

DepotProgress = Callable[[int, "str | None"], None]

_log = logging.getLogger(__name__)


def release_asset_name(system: str | None = None, machine: str | None = None) -> str:
    """Name of the DepotDownloader release asset for this platform."""
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()
    os_name = {"windows": "windows", "darwin": "macos", "linux": "linux"}.get(system)
    if os_name is None:
        raise LauncherError(f"DepotDownloader has no release for {system}.")
    arch = "arm64" if machine in ("arm64", "aarch64") else "x64"
    return f"DepotDownloader-{os_name}-{arch}"


class ProcessEnded(Exception):
    """The subprocess closed its output stream."""


class DepotProcess:
    """A running DepotDownloader; output is pumped onto a queue by a reader thread."""

    def __init__(self, args: list[str], cwd: Path):
        self.proc = subprocess.Popen(
            args,
            cwd=str(cwd),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
        self._lines: queue.Queue[str | None] = queue.Queue()
        self._reader = threading.Thread(target=self._pump, name="depot-reader", daemon=True)
        self._reader.start()

    def _pump(self):
        try:
            for line in self.proc.stdout:
                self._lines.put(line)
        finally:
            self._lines.put(None)

    def read_line(self, timeout: float) -> str | None:
        """Next output line, or None if nothing arrived within ``timeout``.

        Raises ``ProcessEnded`` once the output stream is exhausted.
        """
        try:
            line = self._lines.get(timeout=timeout)
        except queue.Empty:
            return None
        if line is None:
            self._lines.put(None)
            raise ProcessEnded()
        return line

    def send_line(self, text: str):
        if self.proc.stdin is None or self.proc.stdin.closed:
            raise SubprocessFailure("DepotDownloader is no longer accepting input.")
        try:
            self.proc.stdin.write(text + "\n")
            self.proc.stdin.flush()
        except OSError as e:
            raise SubprocessFailure(f"Failed to send input to DepotDownloader: {e}") from e

    def kill(self):
        if self.proc.poll() is None:
            self.proc.kill()
        self.proc.wait()

    def wait(self, timeout: float | None = None) -> int:
        return self.proc.wait(timeout=timeout)


ProcessFactory = Callable[[list, Path], DepotProcess]


class DepotDownloader:
    def __init__(self, settings: LauncherSettings, spawn: ProcessFactory = DepotProcess):
        self.settings = settings
        self.paths = settings.paths
        self.spawn = spawn

    @property
    def executable(self) -> Path:
        return self.settings.resolved_downloader_path

    @property
    def ipc_mode(self) -> bool:
        return (self.executable.parent / PATCH_MARKER).exists()

    def _command(self, args: list[str]) -> list[str]:
        if self.ipc_mode:
            args = ["-ipc"] + args
        return [str(self.executable)] + args

    def _depot_args(self) -> list[str]:
        return ["-app", self.settings.depot_app_id, "-depot", self.settings.depot_id]

    def login_command(self, username: str, password: str) -> list[str]:
        cache = self.paths.depot_config_dir / LOGIN_CACHE_DIRNAME
        return self._command(
            self._depot_args()
            + ["-manifest-only", "-dir", str(cache)]
            + ["-username", username, "-password", password, "-remember-password"]
        )

    def download_command(self, manifest_id: str | None, output_dir: Path, username: str) -> list[str]:
        args = self._depot_args()
        if manifest_id:
            args += ["-manifest", manifest_id]
        args += ["-dir", str(output_dir), "-username", username, "-remember-password"]
        return self._command(args)

    # ── Self-install ──────────────────────────────────────────────────

    def release_url(self) -> str:
        s = self.settings
        return s.downloader_release_url.format(release=s.downloader_release, asset=release_asset_name())

    def ensure_installed(self, session: requests.Session | None = None, force: bool = False) -> bool:
        """Download and unpack DepotDownloader next to ``executable``.

        Returns False without touching the network when a build (or a
        patched IPC build) is already there.
        """
        install_dir = self.executable.parent
        if not force and (self.ipc_mode or self.executable.exists()):
            _log.debug("DepotDownloader already installed at %s", install_dir)
            return False

        url = self.release_url()
        archive = install_dir / ARCHIVE_NAME
        install_dir.mkdir(parents=True, exist_ok=True)
        _log.info("Downloading DepotDownloader from %s to %s", url, install_dir)
        http = session or requests.Session()
        try:
            with http.get(url, stream=True, timeout=self.settings.http_timeout) as resp:
                resp.raise_for_status()
                with open(archive, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
            extract_mapped(archive, install_dir, PurePosixPath, overwrite=True)
        except requests.RequestException as e:
            raise LauncherError(f"Could not download DepotDownloader: {e}") from e
        except zipfile.BadZipFile as e:
            raise LauncherError(f"DepotDownloader download is not a valid zip: {e}") from e
        finally:
            archive.unlink(missing_ok=True)

        if not self.executable.exists():
            raise LauncherError(f"DepotDownloader archive did not contain {self.executable.name}.")
        if os.name != "nt":
            mode = self.executable.stat().st_mode
            self.executable.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        _log.info("DepotDownloader installed at %s", install_dir)
        return True

    # ── Runs ──────────────────────────────────────────────────────────

    def _start(self, command: list[str]) -> DepotProcess:
        if not self.executable.exists():
            raise SubprocessFailure(f"DepotDownloader not found at {self.executable}")
        self.paths.depot_config_dir.mkdir(parents=True, exist_ok=True)
        shown = ["***" if i > 0 and command[i - 1] == "-password" else a for i, a in enumerate(command)]
        _log.info("Starting DepotDownloader: %s", " ".join(shown))
        try:
            return self.spawn(command, self.paths.depot_config_dir)
        except OSError as e:
            raise SubprocessFailure(f"Failed to start DepotDownloader: {e}") from e

    def start_login(self, username: str, password: str) -> DepotProcess:
        (self.paths.depot_config_dir / LOGIN_CACHE_DIRNAME).mkdir(parents=True, exist_ok=True)
        return self._start(self.login_command(username, password))

    def download_depot(
        self,
        version: int,
        manifest_id: str | None,
        output_dir: Path,
        username: str,
        cancel: threading.Event | None = None,
        on_progress: DepotProgress | None = None,
        on_output: Callable[[str], None] | None = None,
    ):
        """Download the depot for ``version`` into ``output_dir``.

        ``cancel`` is polled between output lines; when set the process is
        killed and ``Cancelled`` raised.  A login prompt means the remembered
        login is gone and raises ``AuthRequired``.
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        proc = self._start(self.download_command(manifest_id, output_dir, username))
        translator = DepotLineTranslator("download")
        last_output = time.monotonic()
        last_bp = -1
        saw_progress = False

        try:
            while True:
                if cancel is not None and cancel.is_set():
                    _log.info("Cancelling depot download for v%d", version)
                    proc.kill()
                    raise Cancelled(version)
                try:
                    raw = proc.read_line(POLL_INTERVAL)
                except ProcessEnded:
                    break

                now = time.monotonic()
                if raw is None:
                    silent = now - last_output
                    if not saw_progress and silent > PROMPT_SILENCE:
                        proc.kill()
                        raise AuthRequired("Steam Guard / login required. Please login and try again.")
                    if saw_progress and silent > STALL_SILENCE:
                        proc.kill()
                        raise SubprocessFailure("Download stalled (no output for 5 minutes). Please retry.")
                    continue

                last_output = now
                for event in translator.translate(raw):
                    if event.kind is DepotEventKind.OUTPUT:
                        _log.debug("DepotDownloader: %s", event.line)
                        if on_output:
                            on_output(event.line)
                    elif event.kind is DepotEventKind.PROGRESS:
                        saw_progress = saw_progress or event.basis_points >= 1
                        if on_progress and event.basis_points != last_bp:
                            last_bp = event.basis_points
                            on_progress(event.basis_points, event.detail)
                    elif event.kind is DepotEventKind.AUTH_PROMPT:
                        proc.kill()
                        raise AuthRequired("Steam Guard / login required. Please login and try again.")

            code = proc.wait()
        except BaseException:
            proc.kill()
            raise

        if code != 0:
            raise SubprocessFailure(f"DepotDownloader exited with code {code}.", exit_code=code)
        if on_progress and last_bp != BASIS_POINTS:
            on_progress(BASIS_POINTS, None)
        _log.info("Depot download for v%d completed", version)
