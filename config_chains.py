"""
Config-file chain groups and the shared BepInEx config directory.

A chain group is a set of config paths (relative to the shared config
directory) that must stay identical: an edit to one member is mirrored to
every other member, and enabling/disabling a mod whose config lives in a
chain toggles the other mods of that chain too.

Which mod owns which config files is only known once the shared directory
has been listed.  Until then membership is guessed by matching the mod's
owner/name against ``.cfg`` chain paths, and the result is flagged
provisional.

Public API
----------
ChainConfigResolver(manifest, config_root=None, config_lister=None)
set_cfg_entry(path, section, entry, value)
list_shared_config_files(shared_dir) -> list[str]
ensure_config_link(version_config_dir, shared_dir) -> bool
ensure_default_config(shared_dir, url, session=None) -> bool
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable

import requests

from archive_utils import extract_config_archive
from manifest_schema import ModEntry, ModIdentity, RemoteManifest, chain_path_key

ConfigLister = Callable[[ModEntry], "list[str] | None"]
EntryEditor = Callable[[Path, str, str, str], None]

LOADER_CFG = "bepinex.cfg"

_SECTION_RE = re.compile(r"^\s*\[(?P<name>[^\]]+)\]\s*$")
_ENTRY_RE = re.compile(r"^\s*(?P<key>[^#;=\s][^=]*?)\s*=")

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainMembership:
    """Mods linked to one mod through chain groups.

    ``confirmed`` is False while the answer rests on the name heuristic.
    """

    identities: frozenset[ModIdentity]
    confirmed: bool


# ── Chain resolver ────────────────────────────────────────────────────


class ChainConfigResolver:
    def __init__(
        self,
        manifest: RemoteManifest,
        config_root: Path | None = None,
        config_lister: ConfigLister | None = None,
    ):
        self.manifest = manifest
        self.config_root = config_root
        self.config_lister = config_lister
        self._recorded: dict[ModIdentity, frozenset[str]] = {}
        self._groups = [frozenset(chain_path_key(p) for p in g) for g in manifest.config_chains]

    def chain_for(self, path: str) -> frozenset[str] | None:
        """The chain group (as published) containing ``path``, if any."""
        key = chain_path_key(path)
        for group, original in zip(self._groups, self.manifest.config_chains):
            if key in group:
                return original
        return None

    def record_config_files(self, mod: ModEntry, files: Iterable[str]):
        self._recorded[mod.identity] = frozenset(chain_path_key(f) for f in files)

    def config_files_for(self, mod: ModEntry) -> list[str] | None:
        """Known config paths of ``mod``; None when no listing is available."""
        recorded = self._recorded.get(mod.identity)
        if recorded is not None:
            return sorted(recorded)
        if self.config_lister is None:
            return None
        listed = self.config_lister(mod)
        return None if listed is None else sorted(chain_path_key(f) for f in listed)

    def _heuristic_paths(self, mod: ModEntry) -> set[str]:
        owner, name = mod.identity
        return {
            path
            for group in self._groups
            for path in group
            if path.endswith(".cfg") and (owner in path or name in path)
        }

    def _chain_paths(self, mod: ModEntry) -> tuple[set[str], bool]:
        files = self.config_files_for(mod)
        if files is None:
            return self._heuristic_paths(mod), False
        members = {p for group in self._groups for p in group}
        return {f for f in files if f in members}, True

    def _groups_touching(self, paths: set[str]) -> list[frozenset[str]]:
        return [g for g in self._groups if g & paths]

    def mods_sharing_chain(self, mod: ModEntry) -> ChainMembership:
        own_paths, confirmed = self._chain_paths(mod)
        groups = self._groups_touching(own_paths)
        if not groups:
            return ChainMembership(frozenset(), confirmed)
        chained = set().union(*groups)

        linked: set[ModIdentity] = set()
        for other in self.manifest.mods:
            if other.identity == mod.identity:
                continue
            paths, other_confirmed = self._chain_paths(other)
            confirmed = confirmed and other_confirmed
            if paths & chained:
                linked.add(other.identity)
        return ChainMembership(frozenset(linked), confirmed)

    def mods_to_toggle(
        self, mod: ModEntry, enabled: bool, disabled: set[ModIdentity]
    ) -> list[ModEntry]:
        """``mod`` plus every chain-linked mod not already in the wanted state."""
        out = [mod]
        for ident in sorted(self.mods_sharing_chain(mod).identities):
            other = self.manifest.find_mod(*ident)
            if other is None or other in out:
                continue
            currently_enabled = ident not in disabled
            if currently_enabled == enabled:
                continue
            out.append(other)
        return out

    def propagate_edit(
        self,
        path: str,
        section: str,
        entry: str,
        value: str,
        editor: EntryEditor | None = None,
    ) -> list[str]:
        """Apply an entry edit to ``path`` and each other path in its chain.

        Every path is written exactly once.  Returns the paths written.
        """
        if self.config_root is None:
            raise ValueError("propagate_edit needs a config_root")
        editor = editor or set_cfg_entry
        group = self.chain_for(path)
        targets = [path]
        if group is not None:
            origin = chain_path_key(path)
            targets += sorted(p for p in group if chain_path_key(p) != origin)

        written = []
        for rel in targets:
            if not _is_safe_relative(rel):
                _log.warning("Refusing to edit config outside the config dir: %r", rel)
                continue
            editor(self.config_root / rel, section, entry, value)
            written.append(rel)
        if len(written) > 1:
            _log.info("Mirrored [%s] %s to %d chained config(s)", section, entry, len(written) - 1)
        return written


def _is_safe_relative(rel: str) -> bool:
    p = PurePosixPath(rel.replace("\\", "/"))
    return bool(p.parts) and not p.is_absolute() and ".." not in p.parts


# ── .cfg entry editing ────────────────────────────────────────────────


def set_cfg_entry(path: Path, section: str, entry: str, value: str):
    """Set ``entry = value`` inside ``[section]``, creating either if missing."""
    text = path.read_text(encoding="utf-8-sig") if path.exists() else ""
    lines = text.splitlines()
    new_line = f"{entry} = {value}"

    start = None
    end = len(lines)
    for i, line in enumerate(lines):
        m = _SECTION_RE.match(line)
        if not m:
            continue
        if start is not None:
            end = i
            break
        if m.group("name").strip() == section:
            start = i

    if start is None:
        if lines and lines[-1].strip():
            lines.append("")
        lines += [f"[{section}]", new_line]
    else:
        for i in range(start + 1, end):
            em = _ENTRY_RE.match(lines[i])
            if em and em.group("key").strip() == entry:
                lines[i] = new_line
                break
        else:
            # after the section's last non-blank line
            insert_at = end
            while insert_at > start + 1 and not lines[insert_at - 1].strip():
                insert_at -= 1
            lines.insert(insert_at, new_line)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


# ── Shared config directory ───────────────────────────────────────────


def list_shared_config_files(shared_dir: Path) -> list[str]:
    if not shared_dir.is_dir():
        return []
    return sorted(
        p.relative_to(shared_dir).as_posix() for p in shared_dir.rglob("*") if p.is_file()
    )


def shared_dir_lister(shared_dir: Path) -> ConfigLister:
    """Default lister: shared config files whose path mentions the owner or name."""

    def lister(mod: ModEntry) -> list[str] | None:
        if not shared_dir.is_dir():
            return None
        owner, name = mod.identity
        return [
            rel
            for rel in list_shared_config_files(shared_dir)
            if owner in rel.lower() or name in rel.lower()
        ]

    return lister


def _merge_add_only(src: Path, dst: Path) -> int:
    copied = 0
    for f in src.rglob("*"):
        if not f.is_file():
            continue
        target = dst / f.relative_to(src)
        if target.exists():
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(f, target)
        copied += 1
    return copied


def ensure_config_link(version_config_dir: Path, shared_dir: Path) -> bool:
    """Point a version's ``BepInEx/config`` at the shared config directory.

    A real directory already there is merged into the shared one (existing
    shared files win) and replaced by the link.  Returns False when the
    platform refused the symlink and a plain copy was left instead.
    """
    shared_dir.mkdir(parents=True, exist_ok=True)
    if version_config_dir.is_symlink():
        if Path(os.readlink(version_config_dir)).resolve() == shared_dir.resolve():
            return True
        version_config_dir.unlink()
    elif version_config_dir.is_dir():
        merged = _merge_add_only(version_config_dir, shared_dir)
        if merged:
            _log.info("Merged %d config file(s) from %s into shared config", merged, version_config_dir)
        shutil.rmtree(version_config_dir)

    version_config_dir.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.symlink(shared_dir, version_config_dir, target_is_directory=True)
    except OSError as exc:
        _log.warning("Could not link %s to shared config (%s); copying instead", version_config_dir, exc)
        version_config_dir.mkdir(parents=True, exist_ok=True)
        _merge_add_only(shared_dir, version_config_dir)
        return False
    _log.info("Linked %s -> %s", version_config_dir, shared_dir)
    return True


def ensure_default_config(
    shared_dir: Path,
    url: str,
    session: requests.Session | None = None,
    timeout: float = 30,
) -> bool:
    """Seed an empty shared config dir from the hosted default config zip.

    Best effort: a failed download is logged and the launcher carries on
    with mod defaults.  Returns True when files were extracted.
    """
    existing = [f for f in list_shared_config_files(shared_dir) if f.lower() != LOADER_CFG]
    if existing:
        return False

    http = session or requests.Session()
    _log.info("Seeding shared config from %s", url)
    with tempfile.TemporaryDirectory(prefix="hql-defcfg-") as tmp:
        archive = Path(tmp) / "default_config.zip"
        try:
            resp = http.get(url, timeout=timeout)
            resp.raise_for_status()
            archive.write_bytes(resp.content)
            written = extract_config_archive(archive, shared_dir, skip_names={LOADER_CFG})
        except (requests.RequestException, ValueError, OSError) as exc:
            _log.warning("Default config unavailable: %s", exc)
            return False
    _log.info("Extracted %d default config file(s)", len(written))
    return bool(written)
