"""
Archive extraction for mod packages, the mod loader pack and config bundles.

Thunderstore serves zips, but locally supplied archives may also be .7z or
.rar, so every entry point accepts all three.  Extraction is always
path-mapped: each member is run through a mapping function that returns the
destination-relative path (or None to skip it), and members that would
escape the destination are skipped.

Public API
----------
extract_into_plugins(archive, plugins_dir, folder_name, on_progress=None)
extract_loader_pack(archive, game_root, on_progress=None)
extract_config_archive(archive, config_dir, skip_names=(), on_progress=None)
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Iterator

import py7zr
import rarfile

SUPPORTED_EXTENSIONS = {".zip", ".7z", ".rar"}

ProgressCallback = Callable[[int, int, str | None], None]
MemberMapper = Callable[[PurePosixPath], PurePosixPath | None]

_log = logging.getLogger(__name__)


def _safe_member(name: str) -> PurePosixPath | None:
    path = PurePosixPath(name.replace("\\", "/"))
    if path.is_absolute() or ".." in path.parts or not path.parts:
        return None
    return path


def _archive_kind(filepath: Path) -> str:
    # Registry downloads are stored without a meaningful suffix, so sniff zips.
    ext = filepath.suffix.lower()
    if ext in SUPPORTED_EXTENSIONS:
        return ext
    if zipfile.is_zipfile(filepath):
        return ".zip"
    raise ValueError(f"Unsupported archive format: {filepath.name}")


@contextmanager
def _open_members(filepath: Path, scratch: Path) -> Iterator[list[tuple[str, Callable[[], bytes]]]]:
    """Yield ``[(member_name, read_bytes), ...]`` for every file in the archive."""
    ext = _archive_kind(filepath)
    if ext == ".zip":
        with zipfile.ZipFile(filepath, "r") as zf:
            yield [
                (info.filename, (lambda n=info.filename: zf.read(n)))
                for info in zf.infolist()
                if not info.is_dir()
            ]
        return

    if ext == ".7z":
        with py7zr.SevenZipFile(filepath, "r") as sz:
            sz.extractall(path=scratch)
    else:
        with rarfile.RarFile(filepath, "r") as rf:
            rf.extractall(path=str(scratch))
    yield [
        (f.relative_to(scratch).as_posix(), f.read_bytes)
        for f in sorted(scratch.rglob("*"))
        if f.is_file()
    ]


def extract_mapped(
    filepath: Path,
    dest_dir: Path,
    mapper: MemberMapper,
    overwrite: bool = False,
    on_progress: ProgressCallback | None = None,
) -> list[Path]:
    """Extract every member ``mapper`` accepts into ``dest_dir``.

    With ``overwrite=False`` existing files are left untouched (add-only).
    Returns the written paths.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    with tempfile.TemporaryDirectory(prefix="hql-extract-") as tmp, _open_members(
        filepath, Path(tmp)
    ) as members:
        total = len(members)
        for done, (name, read) in enumerate(members, start=1):
            safe = _safe_member(name)
            if safe is None:
                _log.warning("Skipping unsafe archive member %r in %s", name, filepath.name)
                continue
            mapped = mapper(safe)
            if mapped is None or not mapped.parts:
                continue
            target = dest_dir.joinpath(*mapped.parts)
            if target.exists() and not overwrite:
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(read())
            written.append(target)
            if on_progress:
                on_progress(done, total, mapped.as_posix())
    return written


# ── Mappers ───────────────────────────────────────────────────────────


def _strip_through(parts: tuple[str, ...], sequence: tuple[str, ...]) -> tuple[str, ...] | None:
    lowered = [p.lower() for p in parts]
    n = len(sequence)
    for i in range(len(parts) - n + 1):
        if tuple(lowered[i:i + n]) == sequence:
            return parts[i + n:]
    return None


def plugins_mapper(path: PurePosixPath) -> PurePosixPath | None:
    """Strip ``.../BepInEx/plugins/`` or ``.../plugins/`` so payloads land flat."""
    parts = path.parts
    for seq in (("bepinex", "plugins"), ("plugins",)):
        rest = _strip_through(parts[:-1], seq)
        if rest is not None:
            return PurePosixPath(*rest, parts[-1])
    return path


def loader_pack_mapper(path: PurePosixPath) -> PurePosixPath | None:
    """Drop top-level files (manifest.json, icon.png) and the top-level folder."""
    if len(path.parts) < 2:
        return None
    return PurePosixPath(*path.parts[1:])


def config_mapper(path: PurePosixPath) -> PurePosixPath | None:
    """Strip an optional ``BepInEx/config/`` or ``config/`` prefix."""
    parts = path.parts
    lowered = [p.lower() for p in parts]
    if lowered[:2] == ["bepinex", "config"] and len(parts) > 2:
        return PurePosixPath(*parts[2:])
    if lowered[:1] == ["config"] and len(parts) > 1:
        return PurePosixPath(*parts[1:])
    return path


# ── Entry points ──────────────────────────────────────────────────────


def extract_into_plugins(
    filepath: Path,
    plugins_dir: Path,
    folder_name: str,
    on_progress: ProgressCallback | None = None,
) -> Path:
    """Extract a mod package into ``plugins_dir/folder_name``, replacing any old copy.

    A failed extraction leaves no folder behind.
    """
    target = plugins_dir / folder_name
    if target.exists():
        shutil.rmtree(target)
    try:
        written = extract_mapped(filepath, target, plugins_mapper, on_progress=on_progress)
        if not written:
            raise ValueError(f"{filepath.name} contained no installable files")
    except Exception:
        shutil.rmtree(target, ignore_errors=True)
        raise
    return target


def extract_loader_pack(
    filepath: Path,
    game_root: Path,
    on_progress: ProgressCallback | None = None,
) -> list[Path]:
    return extract_mapped(filepath, game_root, loader_pack_mapper, overwrite=True, on_progress=on_progress)


def extract_config_archive(
    filepath: Path,
    config_dir: Path,
    skip_names: Iterable[str] = (),
    on_progress: ProgressCallback | None = None,
) -> list[Path]:
    """Add-only extraction of a config bundle; files named in ``skip_names`` are left out."""
    skipped = {n.lower() for n in skip_names}

    def mapper(path: PurePosixPath) -> PurePosixPath | None:
        if path.name.lower() in skipped:
            return None
        return config_mapper(path)

    return extract_mapped(filepath, config_dir, mapper, on_progress=on_progress)
