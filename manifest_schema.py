"""
Remote manifest schema for HQ Launcher.

The launcher reads a single hosted ``manifest.json`` describing which game
versions can be installed (and which Steam depot manifest materialises each
one), which practice/QoL mods go on top, and which config files are "chained"
so that edits to one are mirrored to the others.

Document layout
---------------

{
    "version": 12,
    "manifests": {"56": "7525563530173177311", "73": "2104414389591786342"},
    "chain_config": [
        ["giosuel.Imperium.cfg", "giosuel.Imperium.old.cfg"]
    ],
    "mods": [
        {
            "dev": "giosuel",
            "name": "Imperium",
            "enabled": true,
            "low_cap": 50,
            "high_cap": null,
            "version_config": {"50": "0.1.9", "56": "0.2.1", "70": "1.1.1"}
        }
    ]
}

``version`` is the manifest revision; the launcher compares it against the
revision it last applied to decide whether an installed version needs a sync.
``version_config`` maps a lower-bound game version to a pinned package version
(``"0.0.0"`` means "no pin, use latest").
"""

from __future__ import annotations

import json
import logging
from typing import NamedTuple

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from errors import Malformed, RegistryUnavailable

DEFAULT_MANIFEST_URL = "https://f.asta.rs/hq-launcher/manifest.json"
NO_PIN = "0.0.0"

# (owner, name) as published in older manifests -> corrected identity
IDENTITY_ALIASES: dict[tuple[str, str], tuple[str, str]] = {
    ("Hardy", "LCMaxSoundFix"): ("Hardy", "LCMaxSoundsFix"),
}

_log = logging.getLogger(__name__)


class ModIdentity(NamedTuple):
    """Case-insensitive owner/name key for a mod package."""

    owner: str
    name: str

    @classmethod
    def of(cls, owner: str, name: str) -> ModIdentity:
        return cls(owner.strip().lower(), name.strip().lower())

    @property
    def key(self) -> str:
        return f"{self.owner}::{self.name}"


def _normalize_config_path(path: str) -> str:
    return path.replace("\\", "/").strip().strip("/")


def chain_path_key(path: str) -> str:
    """Comparison key for config paths; BepInEx config names are case-insensitive."""
    return _normalize_config_path(path).lower()


class ModEntry(BaseModel):
    """One mod the manifest wants installed on compatible game versions.

    ``low_bound``/``high_bound`` form an inclusive applicability window; a
    missing bound is unbounded on that side.  ``version_pins`` keys are game
    version thresholds: the greatest key not exceeding the target version
    selects the pinned package version.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    owner: str = Field(alias="dev")
    name: str
    enabled: bool = True
    low_bound: int | None = Field(default=None, alias="low_cap")
    high_bound: int | None = Field(default=None, alias="high_cap")
    version_pins: dict[int, str] = Field(default_factory=dict, alias="version_config")

    @model_validator(mode="before")
    @classmethod
    def _apply_aliases(cls, data):
        if not isinstance(data, dict):
            return data
        owner = data.get("dev", data.get("owner"))
        name = data.get("name")
        fixed = IDENTITY_ALIASES.get((owner, name))
        if fixed is not None:
            _log.info("Normalising manifest identity %s-%s -> %s-%s", owner, name, *fixed)
            data = dict(data)
            data.pop("owner", None)
            data["dev"], data["name"] = fixed
        return data

    @field_validator("owner", "name")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("mod owner and name must not be empty")
        return v

    @field_validator("version_pins", mode="before")
    @classmethod
    def _parse_pin_keys(cls, v):
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("version_config must be an object")
        pins: dict[int, str] = {}
        # Keys that differ only by leading zeros collapse; the last one parsed wins.
        for raw_key, pinned in v.items():
            try:
                key = int(str(raw_key).strip())
            except ValueError:
                raise ValueError(f"version_config key {raw_key!r} is not a game version")
            if key < 0:
                raise ValueError(f"version_config key {raw_key!r} is negative")
            if key in pins:
                _log.warning("Duplicate version_config key %r; last value wins", raw_key)
            pins[key] = str(pinned).strip()
        return pins

    @model_validator(mode="after")
    def _check_bounds(self) -> ModEntry:
        if (
            self.low_bound is not None
            and self.high_bound is not None
            and self.low_bound > self.high_bound
        ):
            raise ValueError(
                f"{self.owner}-{self.name}: low_cap {self.low_bound} > high_cap {self.high_bound}"
            )
        return self

    @property
    def identity(self) -> ModIdentity:
        return ModIdentity.of(self.owner, self.name)

    @property
    def label(self) -> str:
        """Folder/display name, e.g. ``giosuel-Imperium``."""
        return f"{self.owner}-{self.name}"


class RemoteManifest(BaseModel):
    """Parsed contents of the hosted manifest.json (an immutable snapshot)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    revision: int = Field(alias="version")
    version_to_depot_id: dict[int, str] = Field(default_factory=dict, alias="manifests")
    config_chains: list[frozenset[str]] = Field(default_factory=list, alias="chain_config")
    mods: list[ModEntry] = Field(default_factory=list)

    @field_validator("version_to_depot_id", mode="before")
    @classmethod
    def _parse_depot_keys(cls, v):
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("manifests must be an object")
        out: dict[int, str] = {}
        for raw_key, depot_id in v.items():
            try:
                out[int(str(raw_key).strip())] = str(depot_id).strip()
            except ValueError:
                raise ValueError(f"manifests key {raw_key!r} is not a game version")
        return out

    @field_validator("config_chains", mode="before")
    @classmethod
    def _normalize_chains(cls, v):
        if v is None:
            return []
        groups = []
        for group in v:
            paths = frozenset(_normalize_config_path(p) for p in group if str(p).strip())
            if paths:
                groups.append(paths)
        return groups

    @model_validator(mode="after")
    def _check_invariants(self) -> RemoteManifest:
        seen_paths: dict[str, int] = {}
        for idx, group in enumerate(self.config_chains):
            for key in {chain_path_key(p) for p in group}:
                if key in seen_paths:
                    raise ValueError(
                        f"Config path {key!r} appears in chain groups "
                        f"{seen_paths[key]} and {idx}"
                    )
                seen_paths[key] = idx

        seen_ids: set[ModIdentity] = set()
        for mod in self.mods:
            if mod.identity in seen_ids:
                raise ValueError(f"Duplicate mod entry: {mod.label}")
            seen_ids.add(mod.identity)
        return self

    def find_mod(self, owner: str, name: str) -> ModEntry | None:
        wanted = ModIdentity.of(owner, name)
        for mod in self.mods:
            if mod.identity == wanted:
                return mod
        return None

    def depot_id_for(self, version: int) -> str | None:
        return self.version_to_depot_id.get(version)

    @property
    def game_versions(self) -> list[int]:
        return sorted(self.version_to_depot_id)


def parse_manifest(data: bytes | str) -> RemoteManifest:
    """Parse raw JSON into a RemoteManifest.

    Raises ``Malformed`` when the bytes are not JSON or fail validation.
    """
    try:
        return RemoteManifest.model_validate(json.loads(data))
    except json.JSONDecodeError as exc:
        raise Malformed(f"Manifest is not valid JSON: {exc}") from exc
    except ValidationError as exc:
        raise Malformed(f"Manifest failed validation: {exc}") from exc


def fetch_manifest(
    session: requests.Session | None = None,
    url: str = DEFAULT_MANIFEST_URL,
    timeout: float = 30,
) -> RemoteManifest:
    """GET and parse the hosted manifest.

    Network/HTTP failures raise ``RegistryUnavailable`` (retryable); a bad
    document raises ``Malformed``.
    """
    http = session or requests.Session()
    _log.info("Fetching manifest from %s", url)
    try:
        resp = http.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise RegistryUnavailable(f"Could not fetch manifest from {url}: {exc}") from exc
    manifest = parse_manifest(resp.content)
    _log.info(
        "Manifest revision %d: %d game version(s), %d mod(s), %d chain group(s)",
        manifest.revision,
        len(manifest.version_to_depot_id),
        len(manifest.mods),
        len(manifest.config_chains),
    )
    return manifest
