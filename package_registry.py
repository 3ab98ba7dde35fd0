"""
Thunderstore package registry client.

The per-package endpoint is unreliable, so the whole community package list
is fetched once per client and indexed by lowercase (owner, name).  Download
URLs are built from a fixed template and need no round trip.

Public API
----------
PackageRegistryClient.latest_version(owner, name) -> str
PackageRegistryClient.download_url(owner, name, version) -> str
PackageRegistryClient.resolve_version(mod, decision) -> str
PackageRegistryClient.download_package(owner, name, version, dest) -> Path
parse_semver_loose(s) / version_key(s) / compare_versions(a, b)
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from pathlib import Path
from typing import Callable

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import NotFound, RegistryUnavailable
from manifest_schema import ModEntry, ModIdentity
from version_pins import PinDecision

DEFAULT_BASE_URL = "https://thunderstore.io"
DEFAULT_COMMUNITY = "lethal-company"
DOWNLOAD_URL_TEMPLATE = "{base}/package/download/{owner}/{name}/{version}/"
CHUNK_SIZE = 128 * 1024

_SEMVER_RE = re.compile(
    r"^(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)

_log = logging.getLogger(__name__)


# ── Lenient semantic versions ─────────────────────────────────────────


def parse_semver_loose(s: str) -> tuple[int, int, int, str | None] | None:
    """Parse ``1``, ``1.2``, ``v1.2.3`` or ``1.2.3-beta.1`` into a tuple.

    Missing minor/patch components default to 0.  Returns None for anything
    that is not recognisably a version.
    """
    m = _SEMVER_RE.match(s.strip().lstrip("vV"))
    if not m:
        return None
    major, minor, patch, pre = m.groups()
    return int(major), int(minor or 0), int(patch or 0), pre


def _prerelease_key(pre: str | None) -> tuple:
    # A release sorts above any of its prereleases.
    if not pre:
        return (1,)
    idents = []
    for part in pre.split("."):
        if part.isdigit():
            idents.append((0, int(part), ""))
        else:
            idents.append((1, 0, part))
    return (0, tuple(idents))


def _semantic_key(s: str) -> tuple:
    parsed = parse_semver_loose(s)
    if parsed is None:
        return (0, ())
    major, minor, patch, pre = parsed
    return (1, (major, minor, patch, _prerelease_key(pre)))


def version_key(s: str) -> tuple:
    """Total ordering key: unparsable < prerelease < release, ties by raw text."""
    return _semantic_key(s) + (s,)


def compare_versions(a: str, b: str) -> int:
    ka, kb = _semantic_key(a), _semantic_key(b)
    if ka == (0, ()) and kb == (0, ()):
        ka, kb = (a,), (b,)
    return (ka > kb) - (ka < kb)


# ── Index models ──────────────────────────────────────────────────────


class PackageVersion(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    version_number: str
    download_url: str = ""


class PackageListing(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    owner: str
    name: str
    full_name: str = ""
    versions: list[PackageVersion] = Field(default_factory=list)

    @property
    def identity(self) -> ModIdentity:
        return ModIdentity.of(self.owner, self.name)

    def version_numbers(self) -> list[str]:
        return [v.version_number for v in self.versions]


def latest_of(versions: list[str]) -> str | None:
    if not versions:
        return None
    return max(versions, key=version_key)


# ── Client ────────────────────────────────────────────────────────────


class PackageRegistryClient:
    def __init__(
        self,
        session: requests.Session | None = None,
        base_url: str = DEFAULT_BASE_URL,
        community: str = DEFAULT_COMMUNITY,
        cache_path: Path | None = None,
        cache_max_age: float = 0,
        timeout: float = 30,
        user_agent: str = "hq-launcher/0.1",
    ):
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.community = community
        self.cache_path = cache_path
        self.cache_max_age = cache_max_age
        self.timeout = timeout
        self.headers = {"User-Agent": user_agent}
        self._index: dict[ModIdentity, PackageListing] | None = None
        self._lock = threading.Lock()

    @property
    def index_url(self) -> str:
        return f"{self.base_url}/c/{self.community}/api/v1/package/"

    # ── Index loading ─────────────────────────────────────────────────

    def _read_disk_cache(self) -> list | None:
        if not self.cache_path or self.cache_max_age <= 0 or not self.cache_path.exists():
            return None
        try:
            data = json.loads(self.cache_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            _log.warning("Ignoring unreadable package cache %s: %s", self.cache_path, exc)
            return None
        age = time.time() - float(data.get("fetched_at", 0))
        if age > self.cache_max_age:
            return None
        _log.info("Using cached package list (%.0fs old)", age)
        return data.get("packages")

    def _write_disk_cache(self, packages: list):
        if not self.cache_path or self.cache_max_age <= 0:
            return
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_text(
                json.dumps({"fetched_at": time.time(), "packages": packages}),
                encoding="utf-8",
            )
        except OSError as exc:
            _log.warning("Could not write package cache %s: %s", self.cache_path, exc)

    def _download_index(self) -> list:
        _log.info("Thunderstore GET %s", self.index_url)
        try:
            resp = self.session.get(self.index_url, headers=self.headers, timeout=self.timeout)
            resp.raise_for_status()
            packages = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise RegistryUnavailable(f"Could not fetch the package list: {exc}") from exc
        if not isinstance(packages, list):
            raise RegistryUnavailable("Package list response was not a JSON array")
        self._write_disk_cache(packages)
        return packages

    def fetch_index(self, refresh: bool = False) -> dict[ModIdentity, PackageListing]:
        """Return the (cached) package index keyed by lowercase identity."""
        with self._lock:
            if self._index is not None and not refresh:
                return self._index
            raw = None if refresh else self._read_disk_cache()
            if raw is None:
                raw = self._download_index()

            index: dict[ModIdentity, PackageListing] = {}
            for record in raw:
                try:
                    listing = PackageListing.model_validate(record)
                except ValidationError as exc:
                    _log.debug("Skipping malformed package record: %s", exc)
                    continue
                index[listing.identity] = listing
            _log.info("Fetched %d packages", len(index))
            self._index = index
            return index

    # ── Queries ───────────────────────────────────────────────────────

    def package(self, owner: str, name: str) -> PackageListing:
        listing = self.fetch_index().get(ModIdentity.of(owner, name))
        if listing is None:
            raise NotFound(owner, name)
        return listing

    def latest_version(self, owner: str, name: str) -> str:
        latest = latest_of(self.package(owner, name).version_numbers())
        if latest is None:
            raise NotFound(owner, name)
        return latest

    def has_version(self, owner: str, name: str, version: str) -> bool:
        return version in self.package(owner, name).version_numbers()

    def download_url(self, owner: str, name: str, version: str) -> str:
        return DOWNLOAD_URL_TEMPLATE.format(
            base=self.base_url, owner=owner, name=name, version=version
        )

    def resolve_version(self, mod: ModEntry, decision: PinDecision) -> str:
        """Concrete package version for an applicable pin decision.

        A pinned version missing from the listing falls back to latest.
        """
        if decision.kind == "pinned" and decision.version:
            if self.has_version(mod.owner, mod.name, decision.version):
                return decision.version
            _log.warning(
                "Pinned version not found for %s: %s (falling back to latest)",
                mod.label,
                decision.version,
            )
        return self.latest_version(mod.owner, mod.name)

    # ── Downloads ─────────────────────────────────────────────────────

    def download_package(
        self,
        owner: str,
        name: str,
        version: str,
        dest: Path,
        on_progress: Callable[[int, int | None], None] | None = None,
    ) -> Path:
        """Stream a package zip to ``dest``; returns ``dest``."""
        url = self.download_url(owner, name, version)
        _log.info("Downloading %s-%s %s from %s", owner, name, version, url)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self.session.get(
                url, headers=self.headers, stream=True, timeout=self.timeout
            ) as resp:
                resp.raise_for_status()
                total = int(resp.headers.get("content-length") or 0) or None
                downloaded = 0
                with open(dest, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        f.write(chunk)
                        downloaded += len(chunk)
                        if on_progress:
                            on_progress(downloaded, total)
        except requests.RequestException as exc:
            dest.unlink(missing_ok=True)
            raise RegistryUnavailable(f"Download of {owner}-{name} {version} failed: {exc}") from exc

        # An HTML error page instead of a zip means the host is misbehaving.
        with open(dest, "rb") as f:
            magic = f.read(2)
        if magic != b"PK":
            dest.unlink(missing_ok=True)
            raise RegistryUnavailable(
                f"{owner}-{name} {version} download is not a valid zip. Please retry."
            )
        return dest
