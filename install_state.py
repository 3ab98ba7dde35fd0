"""
Persisted install state for HQ Launcher.

Three kinds of records live on disk:

* the global disabled-mod list (``config/disablemod.json``), shared by every
  installed game version;
* per-version installed mod versions
  (``versions/v{N}/.hq-launcher/installed_mods.json``);
* the per-version config-link marker
  (``versions/v{N}/.hq-launcher/config_link.json``).

Per-version records are single-writer: whoever holds the version's lock (an
install/update task, or ``exclusive()``) is the only one allowed to write
them.  The same lock is the install orchestrator's admission slot.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterable

from errors import Busy, Malformed
from manifest_schema import ModIdentity
from settings import AppPaths

DISABLEMOD_FILE_VERSION = 2
INSTALLED_FILE_VERSION = 1
DISABLED_SUFFIX = ".old"
PLUGIN_MANIFEST = "manifest.json"

# Added to the disabled list on first run (and by the v1 -> v2 migration).
DEFAULT_DISABLED = (("SlushyRH", "FreeeeeeMoooooons"),)

_VERSION_DIR_RE = re.compile(r"^v(\d+)$")

_log = logging.getLogger(__name__)


@dataclass
class InstalledModVersion:
    owner: str
    name: str
    version: str

    @property
    def identity(self) -> ModIdentity:
        return ModIdentity.of(self.owner, self.name)


@dataclass
class ConfigLinkState:
    linked: bool = False
    target: str | None = None


def _write_json(path: Path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


def mod_folder_name(owner: str, name: str) -> str:
    return f"{owner}-{name}"


def mod_dir_for(plugins_dir: Path, owner: str, name: str) -> Path | None:
    """Find a mod's plugin folder, matching the folder name case-insensitively."""
    direct = plugins_dir / mod_folder_name(owner, name)
    if direct.exists():
        return direct
    if not plugins_dir.is_dir():
        return None
    target = mod_folder_name(owner.strip(), name.strip()).lower()
    for entry in plugins_dir.iterdir():
        if entry.is_dir() and entry.name.lower() == target:
            return entry
    return None


def set_mod_files_enabled(mod_dir: Path, enabled: bool) -> int:
    """Disable a plugin folder by suffixing every file with ``.old`` (or undo it).

    Never overwrites: a file whose renamed counterpart already exists is left
    alone.  Returns the number of files renamed.
    """
    if not mod_dir.exists():
        return 0
    renamed = 0
    for path in sorted(p for p in mod_dir.rglob("*") if p.is_file()):
        is_old = path.name.lower().endswith(DISABLED_SUFFIX)
        if enabled and is_old:
            new_path = path.with_name(path.name[: -len(DISABLED_SUFFIX)])
        elif not enabled and not is_old:
            new_path = path.with_name(path.name + DISABLED_SUFFIX)
        else:
            continue
        if new_path.exists():
            continue
        path.rename(new_path)
        renamed += 1
    return renamed


def read_plugin_manifest_version(mod_dir: Path) -> str | None:
    """Package version from a plugin folder's manifest.json (or .old while disabled)."""
    for candidate in (PLUGIN_MANIFEST, PLUGIN_MANIFEST + DISABLED_SUFFIX):
        path = mod_dir / candidate
        if not path.exists():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8-sig"))
        except (OSError, json.JSONDecodeError) as exc:
            _log.warning("Could not read %s: %s", path, exc)
            return None
        version = data.get("version_number")
        return str(version) if version else None
    return None


class InstallStateStore:
    def __init__(self, paths: AppPaths):
        self.paths = paths
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._disabled_lock = threading.RLock()

    # ── Per-version locks ─────────────────────────────────────────────

    def version_lock(self, version: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(version)
            if lock is None:
                lock = self._locks[version] = threading.Lock()
            return lock

    def try_acquire(self, version: int) -> bool:
        return self.version_lock(version).acquire(blocking=False)

    def release(self, version: int):
        self.version_lock(version).release()

    def is_busy(self, version: int) -> bool:
        return self.version_lock(version).locked()

    @contextmanager
    def exclusive(self, version: int):
        """Hold the version's writer lock; raises ``Busy`` if a task owns it."""
        if not self.try_acquire(version):
            raise Busy(version)
        try:
            yield
        finally:
            self.release(version)

    def _require_writer(self, version: int):
        if not self.is_busy(version):
            raise RuntimeError(f"v{version} records written without holding its lock")

    # ── Installed versions ────────────────────────────────────────────

    def installed_versions(self) -> list[int]:
        if not self.paths.versions_dir.is_dir():
            return []
        versions = []
        for entry in self.paths.versions_dir.iterdir():
            m = _VERSION_DIR_RE.match(entry.name)
            if entry.is_dir() and m:
                versions.append(int(m.group(1)))
        return sorted(versions)

    def latest_installed_version(self) -> int | None:
        versions = self.installed_versions()
        return versions[-1] if versions else None

    # ── Installed mod versions ────────────────────────────────────────

    def installed_mods(self, version: int) -> dict[ModIdentity, InstalledModVersion]:
        path = self.paths.installed_mods_path(version)
        if not path.exists():
            return self._backfill_from_plugins(version)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if data.get("version") != INSTALLED_FILE_VERSION:
                raise ValueError(f"Unsupported state version: {data.get('version')!r}")
            records = [InstalledModVersion(**rec) for rec in data.get("mods", [])]
        except (OSError, ValueError, TypeError) as exc:
            _log.warning("Could not load installed mods for v%d: %s", version, exc)
            return self._backfill_from_plugins(version)
        return {rec.identity: rec for rec in records}

    def _backfill_from_plugins(self, version: int) -> dict[ModIdentity, InstalledModVersion]:
        """Rebuild records from plugin folders' manifest.json (read-only)."""
        plugins = self.paths.plugins_dir(version)
        out: dict[ModIdentity, InstalledModVersion] = {}
        if not plugins.is_dir():
            return out
        for entry in sorted(plugins.iterdir()):
            if not entry.is_dir() or "-" not in entry.name:
                continue
            owner, name = entry.name.split("-", 1)
            pkg_version = read_plugin_manifest_version(entry)
            if pkg_version is None:
                continue
            rec = InstalledModVersion(owner, name, pkg_version)
            out[rec.identity] = rec
        if out:
            _log.info("Backfilled %d installed mod record(s) for v%d from plugins", len(out), version)
        return out

    def _save_installed(self, version: int, records: dict[ModIdentity, InstalledModVersion]):
        ordered = sorted(records.values(), key=lambda r: (r.owner.lower(), r.name.lower()))
        _write_json(
            self.paths.installed_mods_path(version),
            {"version": INSTALLED_FILE_VERSION, "mods": [asdict(r) for r in ordered]},
        )

    def record_installed(self, version: int, owner: str, name: str, pkg_version: str):
        self._require_writer(version)
        records = self.installed_mods(version)
        rec = InstalledModVersion(owner, name, pkg_version)
        records[rec.identity] = rec
        self._save_installed(version, records)

    def forget_installed(self, version: int, identity: ModIdentity):
        self._require_writer(version)
        records = self.installed_mods(version)
        if records.pop(identity, None) is not None:
            self._save_installed(version, records)

    # ── Config link marker ────────────────────────────────────────────

    def config_link(self, version: int) -> ConfigLinkState:
        path = self.paths.config_link_path(version)
        if not path.exists():
            return ConfigLinkState()
        try:
            return ConfigLinkState(**json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, TypeError) as exc:
            _log.warning("Could not read config link marker for v%d: %s", version, exc)
            return ConfigLinkState()

    def set_config_link(self, version: int, linked: bool, target: Path | None = None):
        self._require_writer(version)
        _write_json(
            self.paths.config_link_path(version),
            asdict(ConfigLinkState(linked, str(target) if target else None)),
        )

    # ── Global disabled-mod list ──────────────────────────────────────

    def _default_disabled(self) -> list[ModIdentity]:
        return [ModIdentity.of(owner, name) for owner, name in DEFAULT_DISABLED]

    def _write_disabled(self, mods: list[ModIdentity]):
        unique = sorted(set(mods))
        _write_json(
            self.paths.disablemod_path,
            {
                "version": DISABLEMOD_FILE_VERSION,
                "mods": [{"dev": m.owner, "name": m.name} for m in unique],
            },
        )

    def disabled_mods(self) -> set[ModIdentity]:
        with self._disabled_lock:
            path = self.paths.disablemod_path
            if not path.exists():
                mods = self._default_disabled()
                self._write_disabled(mods)
                return set(mods)
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                mods = [ModIdentity.of(m["dev"], m["name"]) for m in data.get("mods", [])]
                file_version = data.get("version")
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                _log.warning("Failed to parse %s, resetting: %s", path.name, exc)
                mods = self._default_disabled()
                self._write_disabled(mods)
                return set(mods)

            if file_version == 1:
                _log.info("Migrating %s from v1 to v%d", path.name, DISABLEMOD_FILE_VERSION)
                mods.extend(self._default_disabled())
                self._write_disabled(mods)
            elif file_version != DISABLEMOD_FILE_VERSION:
                raise Malformed(f"{path.name} has unsupported version {file_version!r}")
            return set(mods)

    def is_disabled(self, owner: str, name: str) -> bool:
        return ModIdentity.of(owner, name) in self.disabled_mods()

    def set_disabled(self, owner: str, name: str, disabled: bool):
        with self._disabled_lock:
            mods = self.disabled_mods()
            ident = ModIdentity.of(owner, name)
            if disabled:
                mods.add(ident)
            else:
                mods.discard(ident)
            self._write_disabled(list(mods))

    def update_disabled(
        self,
        disable: Iterable[ModIdentity] = (),
        enable: Iterable[ModIdentity] = (),
    ) -> set[ModIdentity]:
        """Add ``disable`` to the list, then drop ``enable`` from it, in one write."""
        with self._disabled_lock:
            mods = self.disabled_mods()
            mods.update(disable)
            mods.difference_update(enable)
            self._write_disabled(list(mods))
            return mods

    # ── Applying enable state to a version ────────────────────────────

    def set_files_enabled(self, version: int, identities: Iterable[ModIdentity], enabled: bool) -> int:
        """Rename the plugin files of ``identities`` in ``version``; absent mods are ignored."""
        self._require_writer(version)
        plugins = self.paths.plugins_dir(version)
        renamed = 0
        for ident in sorted(set(identities)):
            mod_dir = mod_dir_for(plugins, ident.owner, ident.name)
            if mod_dir is not None:
                renamed += set_mod_files_enabled(mod_dir, enabled)
        return renamed

    def is_installed(self, version: int, identity: ModIdentity) -> bool:
        return mod_dir_for(self.paths.plugins_dir(version), identity.owner, identity.name) is not None

    def apply_disabled_mods(self, version: int) -> int:
        """Suffix every globally disabled mod's files in this version."""
        return self.set_files_enabled(version, self.disabled_mods(), enabled=False)

    def set_mod_enabled(self, version: int, owner: str, name: str, enabled: bool):
        """Record the global enable state and apply it to ``version`` now.

        Raises ``Busy`` while an install/update owns the version.
        """
        with self.exclusive(version):
            self.set_disabled(owner, name, not enabled)
            mod_dir = mod_dir_for(self.paths.plugins_dir(version), owner, name)
            if mod_dir is not None:
                set_mod_files_enabled(mod_dir, enabled)
            _log.info(
                "%s %s-%s for v%d", "Enabled" if enabled else "Disabled", owner, name, version
            )

    # ── Applied manifest revision ─────────────────────────────────────

    def applied_manifest_revision(self) -> int:
        path = self.paths.manifest_state_path
        if not path.exists():
            return 0
        try:
            return int(json.loads(path.read_text(encoding="utf-8")).get("manifest_version", 0))
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            _log.warning("Could not read %s: %s", path.name, exc)
            return 0

    def set_applied_manifest_revision(self, revision: int):
        _write_json(self.paths.manifest_state_path, {"manifest_version": revision})


def remove_tree(path: Path) -> bool:
    """Delete a directory tree.  Returns True if anything was removed."""
    if not path.exists():
        return False
    shutil.rmtree(path)
    return True
