"""
Tests for the install/update pipeline.
"""

import json
import threading
import time

import pytest
import requests

from auth_session import LoginState, load_login_state, save_login_state
from depot_downloader import DepotDownloader
from errors import AuthRequired, Busy, Cancelled, LauncherError, RegistryUnavailable
from install_state import InstallStateStore
from manifest_schema import ModIdentity
from orchestrator import InstallOrchestrator, TaskPhase
from package_registry import PackageRegistryClient
from progress import DOWNLOAD_ERROR, DOWNLOAD_FINISHED, DOWNLOAD_PROGRESS, EventBus
from tests.conftest import (
    FakeResponse,
    FakeSession,
    make_manifest,
    mod_entry,
    package_record,
    zip_bytes,
)

INDEX_URL = "https://thunderstore.io/c/lethal-company/api/v1/package/"
DOWNLOADS = "https://thunderstore.io/package/download/"

LOADER_ZIP = zip_bytes({
    "manifest.json": json.dumps({"version_number": "5.4.2304"}),
    "BepInExPack/winhttp.dll": b"x",
    "BepInExPack/BepInEx/core/BepInEx.dll": b"x",
    "BepInExPack/BepInEx/config/BepInEx.cfg": "[Logging]\n",
})


def mod_zip(version="1.1.1"):
    return zip_bytes({
        "manifest.json": json.dumps({"version_number": version}),
        "plugins/Mod.dll": b"x",
    })


class FakeDepot(DepotDownloader):
    def __init__(self, settings, block=False):
        super().__init__(settings)
        self.block = block
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = []
        self.after = None

    def download_depot(self, version, manifest_id, output_dir, username,
                       cancel=None, on_progress=None, on_output=None):
        self.calls.append((version, manifest_id, username))
        output_dir.mkdir(parents=True, exist_ok=True)
        (output_dir / "Lethal Company.exe").write_bytes(b"exe")
        on_progress(5000, "Lethal Company.exe")
        self.entered.set()
        while self.block and not self.release.is_set():
            if cancel is not None and cancel.is_set():
                raise Cancelled(version)
            time.sleep(0.01)
        on_progress(10000, None)
        if self.after is not None:
            self.after()


class Harness:
    def __init__(self, settings, manifest, records, block=False, index=None, logged_in=True):
        self.settings = settings
        self.paths = settings.paths
        self.manifest = manifest
        routes = {
            INDEX_URL: index or FakeResponse(payload=records),
            DOWNLOADS + "BepInEx/": FakeResponse(content=LOADER_ZIP),
            DOWNLOADS: FakeResponse(content=mod_zip()),
        }
        self.session = FakeSession(routes)
        self.registry = PackageRegistryClient(session=self.session)
        self.depot = FakeDepot(settings, block=block)
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(lambda name, payload: self.events.append((name, payload)))
        self.store = InstallStateStore(self.paths)
        if logged_in:
            save_login_state(self.paths.login_state_path, LoginState(True, "alice"))
        self.orch = InstallOrchestrator(
            settings,
            self.store,
            self.registry,
            self.depot,
            manifest_provider=lambda: self.manifest,
            login_state=lambda: load_login_state(self.paths.login_state_path),
            bus=self.bus,
        )

    def names(self):
        return [name for name, _ in self.events]

    def progress(self):
        return [p for name, p in self.events if name == DOWNLOAD_PROGRESS]


def standard_records():
    return [
        package_record("BepInEx", "BepInExPack", "5.4.2304"),
        package_record("giosuel", "Imperium", "1.0.1", "1.1.1"),
        package_record("Hardy", "LCMaxSoundsFix", "1.2.0"),
    ]


def standard_manifest(**kwargs):
    mods = kwargs.pop("mods", [
        mod_entry("giosuel", "Imperium", low_cap=56, version_config={"56": "1.0.1", "73": "1.1.1"}),
        mod_entry("Hardy", "LCMaxSoundsFix"),
        mod_entry("Old", "Mod", high_cap=50),
    ])
    return make_manifest(mods=mods, manifests={"56": "111", "73": "222"}, **kwargs)


# ── install ──────────────────────────────────────────────────────────────────

def test_install_happy_path(settings):
    h = Harness(settings, standard_manifest(), standard_records())
    task = h.orch.install(73)

    assert task.phase is TaskPhase.FINISHED
    assert task.failures == []
    assert h.depot.calls == [(73, "222", "alice")]
    version_dir = h.paths.version_dir(73)
    assert (version_dir / "winhttp.dll").exists()
    assert (h.paths.plugins_dir(73) / "giosuel-Imperium" / "Mod.dll").exists()
    assert not (h.paths.plugins_dir(73) / "Old-Mod").exists()

    installed = h.store.installed_mods(73)
    assert installed[ModIdentity("giosuel", "imperium")].version == "1.1.1"
    assert installed[ModIdentity("hardy", "lcmaxsoundsfix")].version == "1.2.0"
    assert h.store.config_link(73).linked
    assert (h.paths.shared_config_dir / "BepInEx.cfg").exists()

    assert h.names()[-1] == DOWNLOAD_FINISHED
    assert DOWNLOAD_ERROR not in h.names()


def test_progress_steps_monotonic_and_phases_ordered(settings):
    h = Harness(settings, standard_manifest(), standard_records())
    h.orch.install(73)
    steps = [p.step for p in h.progress()]
    assert steps == sorted(steps)
    assert all(1 <= p.step <= p.steps_total for p in h.progress()[1:])

    order = [
        "resolving_plan",
        "downloading_game_files",
        "installing_mods",
        "applying_config_chains",
        "finished",
    ]
    seen = []
    for p in h.progress():
        if not seen or seen[-1] != p.phase:
            seen.append(p.phase)
    assert seen == order
    assert h.progress()[-1].overall_percent == 100.0


def test_install_requires_login_before_touching_disk(settings):
    h = Harness(settings, standard_manifest(), standard_records(), logged_in=False)
    with pytest.raises(AuthRequired):
        h.orch.install(73)
    assert not h.paths.version_dir(73).exists()
    assert h.depot.calls == []
    assert h.names()[-1] == DOWNLOAD_ERROR
    assert h.orch.get_task(73).phase is TaskPhase.FAILED
    assert not h.store.is_busy(73)


def test_unknown_game_version(settings):
    h = Harness(settings, standard_manifest(), standard_records())
    with pytest.raises(LauncherError):
        h.orch.install(99)
    assert not h.paths.version_dir(99).exists()


def test_missing_package_recorded_and_task_finishes(settings):
    records = [r for r in standard_records() if r["name"] != "LCMaxSoundsFix"]
    h = Harness(settings, standard_manifest(), records)
    task = h.orch.install(73)
    assert task.phase is TaskPhase.FINISHED
    assert [f.label for f in task.failures] == ["Hardy-LCMaxSoundsFix"]
    assert h.names()[-1] == DOWNLOAD_FINISHED


def test_registry_unavailable_fails_task(settings):
    h = Harness(
        settings, standard_manifest(), [],
        index=requests.ConnectionError("offline"),
    )
    with pytest.raises(RegistryUnavailable):
        h.orch.install(73)
    assert h.orch.get_task(73).phase is TaskPhase.FAILED
    assert h.names()[-1] == DOWNLOAD_ERROR


def test_reinstall_starts_from_clean_version_dir(settings):
    h = Harness(settings, standard_manifest(), standard_records())
    h.orch.install(73)
    stale = h.paths.version_dir(73) / "stale.txt"
    stale.write_text("old", encoding="utf-8")
    assert (h.paths.plugins_dir(73) / "Hardy-LCMaxSoundsFix").exists()

    h.manifest = standard_manifest(mods=[
        mod_entry("giosuel", "Imperium", low_cap=56, version_config={"56": "1.0.1", "73": "1.1.1"}),
    ])
    task = h.orch.install(73)

    assert task.phase is TaskPhase.FINISHED
    assert not stale.exists()
    assert not (h.paths.plugins_dir(73) / "Hardy-LCMaxSoundsFix").exists()
    assert (h.paths.plugins_dir(73) / "giosuel-Imperium" / "Mod.dll").exists()
    installed = h.store.installed_mods(73)
    assert ModIdentity("giosuel", "imperium") in installed
    assert ModIdentity("hardy", "lcmaxsoundsfix") not in installed


def test_failed_reinstall_of_mod_drops_its_record(settings):
    h = Harness(settings, standard_manifest(), standard_records())
    h.orch.install(73)
    assert ModIdentity("giosuel", "imperium") in h.store.installed_mods(73)

    h.manifest = standard_manifest(mods=[mod_entry("giosuel", "Imperium", version_config={"73": "1.0.1"})])
    h.session.routes = {DOWNLOADS + "giosuel/": FakeResponse(content=b"PK broken"), **h.session.routes}
    task = h.orch.update(73)

    assert task.phase is TaskPhase.FINISHED
    assert [f.label for f in task.failures] == ["giosuel-Imperium"]
    assert not (h.paths.plugins_dir(73) / "giosuel-Imperium").exists()
    installed = h.store.installed_mods(73)
    assert ModIdentity("giosuel", "imperium") not in installed
    assert ModIdentity("hardy", "lcmaxsoundsfix") in installed


def test_globally_disabled_mod_installed_disabled(settings):
    manifest = standard_manifest(mods=[mod_entry("giosuel", "Imperium")])
    h = Harness(settings, manifest, standard_records())
    h.store.set_disabled("giosuel", "Imperium", True)
    h.orch.install(73)
    folder = h.paths.plugins_dir(73) / "giosuel-Imperium"
    assert (folder / "Mod.dll.old").exists()
    assert not (folder / "Mod.dll").exists()


# ── admission and cancellation ───────────────────────────────────────────────

def test_concurrent_install_rejected_busy(settings):
    h = Harness(settings, standard_manifest(), standard_records(), block=True)
    task = h.orch.start_install(73)
    assert h.depot.entered.wait(5)

    with pytest.raises(Busy):
        h.orch.install(73)
    assert h.orch.get_task(73) is task
    assert h.orch.is_running(73)
    assert len(h.depot.calls) == 1

    h.depot.release.set()
    assert task.done.wait(5)
    assert task.phase is TaskPhase.FINISHED
    assert not h.orch.is_running(73)
    assert [p.name for p in h.paths.versions_dir.iterdir()] == ["v73"]


def test_cancel_during_download_removes_partial_install(settings):
    h = Harness(settings, standard_manifest(), standard_records(), block=True)
    task = h.orch.start_install(73)
    assert h.depot.entered.wait(5)
    assert h.paths.version_dir(73).exists()

    assert h.orch.cancel(73) is True
    assert task.done.wait(5)

    assert task.phase is TaskPhase.FAILED
    assert not h.paths.version_dir(73).exists()
    assert h.store.installed_mods(73) == {}
    name, payload = h.events[-1]
    assert name == DOWNLOAD_ERROR
    assert payload.cancelled is True
    assert not h.store.is_busy(73)


def test_cancel_arriving_as_download_returns(settings):
    h = Harness(settings, standard_manifest(), standard_records())
    h.depot.after = lambda: h.orch.cancel(73)

    with pytest.raises(Cancelled):
        h.orch.install(73)

    task = h.orch.get_task(73)
    assert task.phase is TaskPhase.FAILED
    assert not h.paths.version_dir(73).exists()
    assert not any(url.startswith(DOWNLOADS) for url in h.session.calls)
    assert h.names()[-1] == DOWNLOAD_ERROR
    assert not h.store.is_busy(73)


def test_cancel_outside_download_is_noop(settings):
    h = Harness(settings, standard_manifest(), standard_records())
    assert h.orch.cancel(73) is False
    h.orch.install(73)
    assert h.orch.cancel(73) is False


def test_retry_after_failure(settings):
    h = Harness(settings, standard_manifest(), standard_records(), logged_in=False)
    with pytest.raises(AuthRequired):
        h.orch.install(73)
    save_login_state(h.paths.login_state_path, LoginState(True, "alice"))
    assert h.orch.install(73).phase is TaskPhase.FINISHED


# ── update / sync ────────────────────────────────────────────────────────────

def test_update_requires_install(settings):
    h = Harness(settings, standard_manifest(), standard_records())
    with pytest.raises(LauncherError):
        h.orch.update(73)


def test_update_skips_game_download_and_current_mods(settings):
    h = Harness(settings, standard_manifest(), standard_records())
    h.orch.install(73)
    h.depot.calls.clear()
    h.session.calls.clear()
    h.events.clear()

    task = h.orch.update(73)
    assert task.phase is TaskPhase.FINISHED
    assert h.depot.calls == []
    assert not any(url.startswith(DOWNLOADS) for url in h.session.calls)
    assert "downloading_game_files" not in {p.phase for p in h.progress()}


def test_apply_updates_only_given_mods(settings):
    h = Harness(settings, standard_manifest(), standard_records())
    h.paths.plugins_dir(73).mkdir(parents=True)
    h.orch.apply_updates(73, [ModIdentity("giosuel", "imperium")])
    installed = h.store.installed_mods(73)
    assert list(installed) == [ModIdentity("giosuel", "imperium")]


def test_sync_latest_install(settings):
    h = Harness(settings, standard_manifest(revision=5), standard_records())
    assert h.orch.sync_latest_install() is False  # nothing installed

    h.orch.install(73)
    assert h.orch.sync_latest_install() is True
    assert h.store.applied_manifest_revision() == 5
    assert h.orch.sync_latest_install() is False
