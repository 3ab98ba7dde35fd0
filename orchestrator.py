"""
Install/update pipeline for one game version.

A task walks these phases in order::

    ResolvingPlan -> DownloadingGameFiles -> InstallingMods -> ApplyingConfigChains -> Finished
                                                                  (any phase) -> Failed

``update`` skips DownloadingGameFiles.  A practice task installs extra mods into an
existing version, skipping any that already have a plugin folder.  At most one task runs per game
version; the admission slot is the InstallStateStore's per-version lock, so
the task is also the only writer of that version's records while it runs.

Every state change is broadcast on the EventBus as a full snapshot
(``download://progress``) and each task ends with exactly one
``download://finished`` or ``download://error``.

Public API
----------
InstallOrchestrator.install(version) / update(version) -> DownloadTask
InstallOrchestrator.start_install(version) / start_update(version) -> DownloadTask
InstallOrchestrator.cancel(version) -> bool
InstallOrchestrator.apply_updates(version, identities) -> DownloadTask
InstallOrchestrator.install_practice_mods(version, mods) -> DownloadTask
InstallOrchestrator.sync_latest_install() -> bool
InstallOrchestrator.plan(version) -> InstallPlan
"""

from __future__ import annotations

import logging
import threading
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Literal

import requests

from archive_utils import extract_into_plugins, extract_loader_pack
from auth_session import LoginState
from config_chains import ensure_config_link, ensure_default_config
from depot_downloader import DepotDownloader
from depot_output import BASIS_POINTS
from errors import AuthRequired, Busy, Cancelled, LauncherError, NotFound
from install_state import (
    InstallStateStore,
    mod_dir_for,
    mod_folder_name,
    remove_tree,
    set_mod_files_enabled,
)
from manifest_schema import ModEntry, ModIdentity, RemoteManifest
from package_registry import PackageRegistryClient, compare_versions
from progress import (
    DEPOT_DOWNLOADER,
    DOWNLOAD_ERROR,
    DOWNLOAD_FINISHED,
    DOWNLOAD_PROGRESS,
    DepotDownloaderPayload,
    EventBus,
    TaskErrorPayload,
    TaskFinishedPayload,
    TaskProgressPayload,
    overall_from_step,
)
from settings import LauncherSettings
from version_pins import resolve

TaskKind = Literal["install", "update", "practice"]

# Failures that only cost one mod; anything else fails the whole task.
MOD_INSTALL_ERRORS = (LauncherError, OSError, ValueError, zipfile.BadZipFile)

_log = logging.getLogger(__name__)


class TaskPhase(Enum):
    RESOLVING_PLAN = "resolving_plan"
    DOWNLOADING_GAME_FILES = "downloading_game_files"
    INSTALLING_MODS = "installing_mods"
    APPLYING_CONFIG_CHAINS = "applying_config_chains"
    FINISHED = "finished"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskPhase.FINISHED, TaskPhase.FAILED)


# ── Plan ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PlannedMod:
    owner: str
    name: str
    version: str
    is_loader: bool = False

    @property
    def identity(self) -> ModIdentity:
        return ModIdentity.of(self.owner, self.name)

    @property
    def label(self) -> str:
        return f"{self.owner}-{self.name}"


@dataclass
class ModFailure:
    label: str
    message: str


@dataclass
class InstallPlan:
    game_version: int
    depot_manifest_id: str | None
    mods: list[PlannedMod] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)  # (label, reason)
    failures: list[ModFailure] = field(default_factory=list)


# ── Task ──────────────────────────────────────────────────────────────


@dataclass
class DownloadTask:
    version: int
    kind: TaskKind
    only: frozenset[ModIdentity] | None = None
    phase: TaskPhase = TaskPhase.RESOLVING_PLAN
    step_index: int = 0
    steps_total: int = 1
    step_name: str = ""
    bytes_downloaded: int | None = None
    bytes_total: int | None = None
    failures: list[ModFailure] = field(default_factory=list)
    error: str | None = None
    cancel: threading.Event = field(default_factory=threading.Event, repr=False)
    done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel.is_set()


class InstallOrchestrator:
    def __init__(
        self,
        settings: LauncherSettings,
        store: InstallStateStore,
        registry: PackageRegistryClient,
        downloader: DepotDownloader,
        manifest_provider: Callable[[], RemoteManifest],
        login_state: Callable[[], LoginState],
        bus: EventBus | None = None,
        http: requests.Session | None = None,
    ):
        self.settings = settings
        self.paths = settings.paths
        self.store = store
        self.registry = registry
        self.downloader = downloader
        self.manifest_provider = manifest_provider
        self.login_state = login_state
        self.bus = bus or EventBus()
        self.http = http or registry.session
        self._tasks: dict[int, DownloadTask] = {}
        self._tasks_lock = threading.Lock()

    # ── Planning ──────────────────────────────────────────────────────

    def plan(
        self,
        version: int,
        include_loader: bool = True,
        only: Iterable[ModIdentity] | None = None,
        mods: Iterable[ModEntry] | None = None,
    ) -> InstallPlan:
        """Resolve every manifest mod (or just ``mods``) for ``version`` to a package version.

        Mods missing from the registry are reported in ``failures``; an
        unreachable registry raises ``RegistryUnavailable``.
        """
        if mods is None:
            manifest = self.manifest_provider()
            plan = InstallPlan(version, manifest.depot_id_for(version))
            mods = manifest.mods
        else:
            plan = InstallPlan(version, None)
        wanted = set(only) if only is not None else None

        if include_loader:
            s = self.settings
            plan.mods.append(PlannedMod(s.loader_owner, s.loader_name, s.loader_version, is_loader=True))

        for mod in mods:
            if wanted is not None and mod.identity not in wanted:
                continue
            decision = resolve(mod, version)
            if not decision.applicable:
                plan.skipped.append((mod.label, decision.reason))
                continue
            try:
                target = self.registry.resolve_version(mod, decision)
            except NotFound as e:
                _log.warning("Skipping %s: %s", mod.label, e)
                plan.failures.append(ModFailure(mod.label, e.message))
                continue
            plan.mods.append(PlannedMod(mod.owner, mod.name, target))

        _log.info(
            "Plan for v%d: %d package(s), %d skipped, %d unresolved",
            version,
            len(plan.mods),
            len(plan.skipped),
            len(plan.failures),
        )
        return plan

    # ── Admission ─────────────────────────────────────────────────────

    def _admit(self, version: int, kind: TaskKind, only=None) -> DownloadTask:
        if not self.store.try_acquire(version):
            raise Busy(version)
        task = DownloadTask(version, kind, frozenset(only) if only is not None else None)
        with self._tasks_lock:
            self._tasks[version] = task
        _log.info("Admitted %s task for v%d", kind, version)
        return task

    def get_task(self, version: int) -> DownloadTask | None:
        with self._tasks_lock:
            return self._tasks.get(version)

    def is_running(self, version: int) -> bool:
        task = self.get_task(version)
        return task is not None and not task.phase.terminal

    # ── Public operations ─────────────────────────────────────────────

    def install(self, version: int) -> DownloadTask:
        return self._execute(self._admit(version, "install"))

    def update(self, version: int) -> DownloadTask:
        return self._execute(self._admit(version, "update"))

    def apply_updates(self, version: int, identities: Iterable[ModIdentity]) -> DownloadTask:
        return self._execute(self._admit(version, "update", only=identities))

    def install_practice_mods(self, version: int, mods: Iterable[ModEntry]) -> DownloadTask:
        wanted = list(mods)
        return self._execute(self._admit(version, "practice"), lambda task: self._run_practice(task, wanted))

    def start_install(self, version: int) -> DownloadTask:
        return self._spawn(self._admit(version, "install"))

    def start_update(self, version: int) -> DownloadTask:
        return self._spawn(self._admit(version, "update"))

    def _spawn(self, task: DownloadTask) -> DownloadTask:
        def worker():
            try:
                self._execute(task)
            except LauncherError as e:
                _log.info("v%d %s task ended: %s", task.version, task.kind, e)
            except Exception:
                _log.exception("v%d %s task crashed", task.version, task.kind)

        threading.Thread(target=worker, name=f"{task.kind}-v{task.version}", daemon=True).start()
        return task

    def cancel(self, version: int) -> bool:
        """Request cancellation of the game-file download for ``version``.

        Returns False when no download is in progress for that version.
        """
        task = self.get_task(version)
        if task is None or task.phase is not TaskPhase.DOWNLOADING_GAME_FILES:
            return False
        task.cancel.set()
        _log.info("Cancel requested for v%d", version)
        return True

    def sync_latest_install(self) -> bool:
        """Bring the newest installed version up to a changed manifest revision.

        Returns True when an update ran.
        """
        manifest = self.manifest_provider()
        applied = self.store.applied_manifest_revision()
        if applied == manifest.revision:
            _log.info("Manifest up-to-date: %d", applied)
            return False
        latest = self.store.latest_installed_version()
        if latest is None:
            return False
        _log.info("Manifest changed: local=%d remote=%d, updating v%d", applied, manifest.revision, latest)
        self.update(latest)
        self.store.set_applied_manifest_revision(manifest.revision)
        return True

    # ── Execution ─────────────────────────────────────────────────────

    def _progress(
        self,
        task: DownloadTask,
        step_progress: float = 0.0,
        detail: str | None = None,
        extracted: int | None = None,
        total_files: int | None = None,
    ):
        self.bus.emit(
            DOWNLOAD_PROGRESS,
            TaskProgressPayload(
                version=task.version,
                phase=task.phase.value,
                steps_total=task.steps_total,
                step=task.step_index,
                step_name=task.step_name,
                step_progress=step_progress,
                overall_percent=overall_from_step(task.step_index, step_progress, task.steps_total),
                detail=detail,
                downloaded_bytes=task.bytes_downloaded,
                total_bytes=task.bytes_total,
                extracted_files=extracted,
                total_files=total_files,
            ),
        )

    def _next_step(self, task: DownloadTask, phase: TaskPhase, name: str, detail: str | None = None):
        task.phase = phase
        task.step_index += 1
        task.step_name = name
        task.bytes_downloaded = task.bytes_total = None
        self._progress(task, 0.0, detail)

    def _execute(
        self,
        task: DownloadTask,
        run: Callable[[DownloadTask], None] | None = None,
    ) -> DownloadTask:
        version = task.version
        try:
            (run or self._run)(task)
        except Cancelled as e:
            remove_tree(self.paths.version_dir(version))
            _log.info("Removed partial install of v%d", version)
            self._fail(task, e)
            raise
        except LauncherError as e:
            self._fail(task, e)
            raise
        except Exception as e:
            _log.exception("v%d %s failed unexpectedly", version, task.kind)
            self._fail(task, e)
            raise
        finally:
            self.store.release(version)
            task.done.set()
        return task

    def _fail(self, task: DownloadTask, exc: BaseException):
        message = exc.message if isinstance(exc, LauncherError) else f"{task.kind.capitalize()} failed: {exc}"
        task.phase = TaskPhase.FAILED
        task.error = message
        _log.error("v%d %s failed: %s", task.version, task.kind, message)
        self.bus.emit(
            DOWNLOAD_ERROR,
            TaskErrorPayload(task.version, message, cancelled=isinstance(exc, Cancelled)),
        )

    def _run(self, task: DownloadTask):
        version = task.version
        version_dir = self.paths.version_dir(version)
        installing = task.kind == "install"

        task.steps_total = 1
        self._next_step(task, TaskPhase.RESOLVING_PLAN, "Resolve Plan", "Checking login...")
        username = None
        if installing:
            state = self.login_state()
            if not state.is_logged_in or not state.username:
                raise AuthRequired()
            username = state.username
        elif not version_dir.is_dir():
            raise LauncherError(f"v{version} is not installed. Install it first.")

        plan = self.plan(version, include_loader=installing, only=task.only)
        if installing and plan.depot_manifest_id is None:
            raise LauncherError(f"Game version {version} is not available in the manifest.")
        task.failures.extend(plan.failures)
        if not installing:
            plan.mods = self._outdated_only(version, plan.mods)

        task.steps_total = 1 + int(installing) + len(plan.mods) + 1
        self._progress(task, 1.0, f"{len(plan.mods)} package(s) to install")

        if installing:
            self._download_game(task, plan, username)

        self._install_mods(task, plan.mods, "Install Mods")

        self._next_step(task, TaskPhase.APPLYING_CONFIG_CHAINS, "Apply Config")
        self._apply_config(task)
        self._finish(task)

    def _run_practice(self, task: DownloadTask, mods: list[ModEntry]):
        version = task.version
        task.steps_total = 1
        self._next_step(task, TaskPhase.RESOLVING_PLAN, "Practice Mods", "Preparing practice mods...")
        if not self.paths.version_dir(version).is_dir():
            raise LauncherError(f"v{version} is not installed. Install it first.")

        plugins = self.paths.plugins_dir(version)
        missing = [m for m in mods if mod_dir_for(plugins, m.owner, m.name) is None]
        plan = self.plan(version, include_loader=False, mods=missing)
        task.failures.extend(plan.failures)
        task.steps_total = 1 + len(plan.mods)
        self._progress(task, 1.0, f"{len(plan.mods)} practice mod(s) to install")

        self._install_mods(task, plan.mods, "Practice Mods")
        self._finish(task)

    def _install_mods(self, task: DownloadTask, mods: list[PlannedMod], step_name: str):
        version = task.version
        for done, pm in enumerate(mods):
            self._next_step(task, TaskPhase.INSTALLING_MODS, step_name, pm.label)
            try:
                self._install_package(task, pm)
            except MOD_INSTALL_ERRORS as e:
                if pm.is_loader:
                    raise
                message = e.message if isinstance(e, LauncherError) else str(e)
                if mod_dir_for(self.paths.plugins_dir(version), pm.owner, pm.name) is None:
                    self.store.forget_installed(version, pm.identity)
                _log.warning("Failed to install %s %s: %s", pm.label, pm.version, message)
                task.failures.append(ModFailure(pm.label, message))
                self._progress(task, 1.0, f"Failed: {pm.label} ({message})", done + 1, len(mods))
                continue
            self._progress(task, 1.0, f"Installed {pm.label} {pm.version}", done + 1, len(mods))

    def _finish(self, task: DownloadTask):
        version = task.version
        remove_tree(self.paths.version_state_dir(version) / "tmp")
        task.phase = TaskPhase.FINISHED
        self._progress(task, 1.0, self._summary(task))
        _log.info("v%d %s finished (%d mod failure(s))", version, task.kind, len(task.failures))
        self.bus.emit(DOWNLOAD_FINISHED, TaskFinishedPayload(version, str(self.paths.version_dir(version))))

    def _summary(self, task: DownloadTask) -> str:
        if not task.failures:
            return "Done"
        return "Done with errors: " + ", ".join(f.label for f in task.failures)

    def _outdated_only(self, version: int, mods: list[PlannedMod]) -> list[PlannedMod]:
        installed = self.store.installed_mods(version)
        out = []
        for pm in mods:
            rec = installed.get(pm.identity)
            if rec is not None and compare_versions(rec.version, pm.version) == 0:
                continue
            out.append(pm)
        return out

    def _download_game(self, task: DownloadTask, plan: InstallPlan, username: str):
        self._next_step(task, TaskPhase.DOWNLOADING_GAME_FILES, "Download Game", "Starting DepotDownloader...")

        def on_progress(bp: int, detail: str | None):
            # DepotDownloader only reports a percentage, so "bytes" are basis points.
            task.bytes_downloaded, task.bytes_total = bp, BASIS_POINTS
            self._progress(task, bp / BASIS_POINTS, detail)

        def on_output(line: str):
            self.bus.emit(DEPOT_DOWNLOADER, DepotDownloaderPayload("output", message=line))

        version_dir = self.paths.version_dir(task.version)
        if remove_tree(version_dir):
            _log.info("Cleared previous files of v%d", task.version)

        self.downloader.download_depot(
            task.version,
            plan.depot_manifest_id,
            version_dir,
            username,
            cancel=task.cancel,
            on_progress=on_progress,
            on_output=on_output,
        )
        if task.cancel.is_set():
            raise Cancelled(task.version)
        self.bus.emit(DEPOT_DOWNLOADER, DepotDownloaderPayload("download_complete"))

    def _install_package(self, task: DownloadTask, pm: PlannedMod):
        version = task.version
        archive = self.paths.mod_temp_dir(version) / f"{pm.label}-{pm.version}.zip"

        def on_bytes(downloaded: int, total: int | None):
            task.bytes_downloaded, task.bytes_total = downloaded, total
            fraction = downloaded / total if total else 0.0
            self._progress(task, fraction * 0.9, f"Downloading {pm.label}")

        try:
            self.registry.download_package(pm.owner, pm.name, pm.version, archive, on_progress=on_bytes)
            if pm.is_loader:
                extract_loader_pack(archive, self.paths.version_dir(version))
            else:
                plugins = self.paths.plugins_dir(version)
                existing = mod_dir_for(plugins, pm.owner, pm.name)
                folder = mod_folder_name(pm.owner, pm.name)
                if existing is not None and existing.name != folder:
                    remove_tree(existing)
                target = extract_into_plugins(archive, plugins, folder)
                if self.store.is_disabled(pm.owner, pm.name):
                    set_mod_files_enabled(target, enabled=False)
        finally:
            archive.unlink(missing_ok=True)
        self.store.record_installed(version, pm.owner, pm.name, pm.version)

    def _apply_config(self, task: DownloadTask):
        version = task.version
        shared = self.paths.shared_config_dir
        ensure_default_config(shared, self.settings.default_config_url, self.http, self.settings.http_timeout)
        self._progress(task, 0.3, "Linking shared config...")
        linked = ensure_config_link(self.paths.version_config_dir(version), shared)
        self.store.set_config_link(version, linked, shared)
        self._progress(task, 0.6, "Applying disabled mods...")
        self.store.apply_disabled_mods(version)
        self._progress(task, 1.0, "Config applied")
