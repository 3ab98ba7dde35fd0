"""
Game launch and process tracking.

The launcher tracks at most one game process.  A normal launch forces the
practice mods off; a practice launch first installs the practice mods that
are compatible with the version, then turns on exactly those.  Either way
the global disabled-mod list is applied to the version right before the
game starts.

On Linux the Windows build runs through Proton with its own wine prefix
under the data directory.

Public API
----------
GameLauncher.launch(version) -> int
GameLauncher.launch_practice(version) -> int
GameLauncher.status() -> GameStatus
GameLauncher.stop() -> bool
find_game_exe(version_dir, exe_name) -> Path | None
"""

from __future__ import annotations

import logging
import os
import platform
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from errors import Busy, GameRunning, LauncherError
from install_state import InstallStateStore
from manifest_schema import ModEntry, ModIdentity
from orchestrator import InstallOrchestrator
from settings import LauncherSettings
from version_pins import resolve

EXE_SEARCH_DEPTH = 3

HQOL = ModIdentity.of("HQHQTeam", "HQoL")
IMPERIUM = ModIdentity.of("giosuel", "Imperium")

PRACTICE_MODS: tuple[ModEntry, ...] = tuple(
    ModEntry.model_validate(entry)
    for entry in (
        {
            "dev": "giosuel",
            "name": "Imperium",
            "low_cap": 50,
            "version_config": {
                "50": "0.1.9",
                "56": "0.2.1",
                "60": "0.2.2",
                "62": "0.2.7",
                "66": "0.2.8",
                "70": "1.1.1",
            },
        },
        {"dev": "Lordfirespeed", "name": "OdinSerializer", "low_cap": 56},
        {
            "dev": "xilophor",
            "name": "LethalNetworkAPI",
            "low_cap": 56,
            "version_config": {"56": "2.2.0", "60": "3.2.0", "62": "3.2.1", "66": "3.3.1"},
        },
        {"dev": "megumin", "name": "LethalDevMode", "low_cap": 45},
        {"dev": "aoirint", "name": "CruiserJumpPractice", "low_cap": 56},
    )
)

STEAM_CANDIDATES = (
    "~/.steam/steam",
    "~/.local/share/Steam",
    "~/.var/app/com.valvesoftware.Steam/.local/share/Steam",
)

_log = logging.getLogger(__name__)


def practice_identities() -> set[ModIdentity]:
    return {m.identity for m in PRACTICE_MODS}


def compatible_practice_mods(version: int) -> list[ModEntry]:
    return [m for m in PRACTICE_MODS if resolve(m, version).applicable]


def find_game_exe(root: Path, exe_name: str, max_depth: int = EXE_SEARCH_DEPTH) -> Path | None:
    """``root/exe_name``, or the first case-insensitive match up to ``max_depth`` folders down."""
    direct = root / exe_name
    if direct.is_file():
        return direct
    target = exe_name.lower()
    pending = [(root, 0)]
    while pending:
        folder, depth = pending.pop()
        try:
            entries = sorted(folder.iterdir())
        except OSError:
            continue
        for entry in entries:
            if entry.is_dir():
                if depth < max_depth:
                    pending.append((entry, depth + 1))
            elif entry.name.lower() == target:
                return entry
    return None


def steam_client_path(settings: LauncherSettings) -> Path:
    if settings.steam_client_path is not None:
        return settings.steam_client_path
    for candidate in STEAM_CANDIDATES:
        path = Path(candidate).expanduser()
        if (path / "steamapps").exists():
            return path
    _log.info("Steam installation not found; using %s as the client path", settings.data_dir)
    return settings.data_dir


def launch_command(
    exe: Path,
    settings: LauncherSettings,
    system: str | None = None,
) -> tuple[list[str], dict[str, str] | None]:
    """Command line and environment (None = inherit) that start ``exe``."""
    system = system or platform.system()
    if system == "Windows":
        return [str(exe)], None
    if system == "Darwin":
        return ["open", "-a", str(exe)], None

    if settings.proton_dir is None:
        raise LauncherError("Proton is not configured. Set proton_dir in settings.json.")
    prefix = settings.paths.proton_prefix_dir
    prefix.mkdir(parents=True, exist_ok=True)
    env = dict(os.environ)
    env.update(
        STEAM_COMPAT_DATA_PATH=str(prefix),
        STEAM_COMPAT_CLIENT_INSTALL_PATH=str(steam_client_path(settings)),
        WINEDLLOVERRIDES="winhttp=n,b",
    )
    return [str(settings.proton_dir / "proton"), "run", str(exe)], env


@dataclass(frozen=True)
class GameStatus:
    running: bool
    pid: int | None = None


Spawner = Callable[..., subprocess.Popen]


class GameLauncher:
    def __init__(
        self,
        settings: LauncherSettings,
        store: InstallStateStore,
        orchestrator: InstallOrchestrator,
        spawn: Spawner = subprocess.Popen,
        system: str | None = None,
    ):
        self.settings = settings
        self.paths = settings.paths
        self.store = store
        self.orchestrator = orchestrator
        self.spawn = spawn
        self.system = system
        self._child: subprocess.Popen | None = None
        self._lock = threading.Lock()

    # ── Launching ─────────────────────────────────────────────────────

    def launch(self, version: int) -> int:
        """Start ``version`` with the practice mods forced off; returns the pid."""
        exe = self._locate(version)
        practice = practice_identities()
        with self.store.exclusive(version):
            self.store.update_disabled(disable=practice)
            self.store.set_files_enabled(version, practice, enabled=False)
            self.store.apply_disabled_mods(version)
            self._sync_hqol(version)
        return self._start(exe, version)

    def launch_practice(self, version: int) -> int:
        """Install and enable the practice mods compatible with ``version``, then start it."""
        exe = self._locate(version)
        compatible = compatible_practice_mods(version)
        self.orchestrator.install_practice_mods(version, compatible)

        practice = practice_identities()
        wanted = {m.identity for m in compatible}
        with self.store.exclusive(version):
            self.store.update_disabled(disable=practice, enable=wanted)
            self.store.set_files_enabled(version, practice, enabled=False)
            self.store.set_files_enabled(version, wanted, enabled=True)
            # HQoL conflicts with Imperium.
            if self.store.is_installed(version, IMPERIUM):
                self.store.set_files_enabled(version, [HQOL], enabled=False)
            else:
                self._sync_hqol(version)
            self.store.apply_disabled_mods(version)
        _log.info("Practice mods for v%d: %s", version, ", ".join(sorted(m.label for m in compatible)) or "none")
        return self._start(exe, version)

    def _sync_hqol(self, version: int):
        enabled = HQOL not in self.store.disabled_mods()
        self.store.set_files_enabled(version, [HQOL], enabled=enabled)

    def _locate(self, version: int) -> Path:
        version_dir = self.paths.version_dir(version)
        if not version_dir.is_dir():
            raise LauncherError(f"v{version} is not installed. Install it first.")
        exe = find_game_exe(version_dir, self.settings.game_exe_name)
        if exe is None:
            raise LauncherError(f"{self.settings.game_exe_name} not found under {version_dir}")
        if self.orchestrator.is_running(version):
            raise Busy(version)
        if self.status().running:
            raise GameRunning()
        return exe

    def _start(self, exe: Path, version: int) -> int:
        command, env = launch_command(exe, self.settings, self.system)
        with self._lock:
            if self._child is not None and self._child.poll() is None:
                raise GameRunning()
            _log.info("Launching v%d: %s", version, " ".join(command))
            try:
                self._child = self.spawn(command, cwd=str(exe.parent), env=env)
            except OSError as e:
                raise LauncherError(f"Failed to launch the game: {e}") from e
            return self._child.pid

    # ── Tracking ──────────────────────────────────────────────────────

    def status(self) -> GameStatus:
        with self._lock:
            child = self._child
            if child is None:
                return GameStatus(False)
            if child.poll() is None:
                return GameStatus(True, child.pid)
            _log.info("Game process %d exited with code %s", child.pid, child.returncode)
            self._child = None
            return GameStatus(False)

    def stop(self) -> bool:
        """Kill the tracked game process; False when none was tracked."""
        with self._lock:
            child, self._child = self._child, None
        if child is None:
            return False
        if child.poll() is None:
            child.kill()
        child.wait()
        _log.info("Stopped game process %d", child.pid)
        return True

    def wait(self, timeout: float | None = None) -> int | None:
        """Block until the tracked game exits; returns its exit code."""
        with self._lock:
            child = self._child
        if child is None:
            return None
        code = child.wait(timeout=timeout)
        self.status()
        return code
