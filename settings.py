"""
Launcher configuration and on-disk layout.

Settings come from (lowest to highest precedence): model defaults, an
optional ``settings.json`` in the data directory, ``HQL_*`` environment
variables, and explicit overrides (CLI flags).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ValidationError, field_validator

from errors import Malformed
from manifest_schema import DEFAULT_MANIFEST_URL

SETTINGS_FILENAME = "settings.json"
ENV_PREFIX = "HQL_"
STATE_DIRNAME = ".hq-launcher"

_log = logging.getLogger(__name__)


def default_data_dir() -> Path:
    return Path(os.environ.get("APPDATA", "~")).expanduser() / "hq-launcher"


@dataclass(frozen=True)
class AppPaths:
    """Every persisted path, derived from one data directory."""

    data_dir: Path

    @property
    def versions_dir(self) -> Path:
        return self.data_dir / "versions"

    def version_dir(self, version: int) -> Path:
        return self.versions_dir / f"v{version}"

    def version_state_dir(self, version: int) -> Path:
        return self.version_dir(version) / STATE_DIRNAME

    def installed_mods_path(self, version: int) -> Path:
        return self.version_state_dir(version) / "installed_mods.json"

    def config_link_path(self, version: int) -> Path:
        return self.version_state_dir(version) / "config_link.json"

    def plugins_dir(self, version: int) -> Path:
        return self.version_dir(version) / "BepInEx" / "plugins"

    def version_config_dir(self, version: int) -> Path:
        return self.version_dir(version) / "BepInEx" / "config"

    def mod_temp_dir(self, version: int) -> Path:
        return self.version_state_dir(version) / "tmp" / "mods"

    @property
    def config_dir(self) -> Path:
        return self.data_dir / "config"

    @property
    def shared_config_dir(self) -> Path:
        return self.config_dir / "shared"

    @property
    def disablemod_path(self) -> Path:
        return self.config_dir / "disablemod.json"

    @property
    def manifest_state_path(self) -> Path:
        return self.config_dir / "manifest_state.json"

    @property
    def depot_config_dir(self) -> Path:
        return self.data_dir / "depot_config"

    @property
    def login_state_path(self) -> Path:
        return self.depot_config_dir / "login_state.json"

    @property
    def downloader_dir(self) -> Path:
        return self.data_dir / "downloader"

    @property
    def proton_prefix_dir(self) -> Path:
        return self.data_dir / "proton_env" / "wine_prefix"

    @property
    def registry_cache_path(self) -> Path:
        return self.data_dir / "cache" / "thunderstore.json"

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / "temp"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"


class LauncherSettings(BaseModel):
    data_dir: Path = default_data_dir()
    manifest_url: str = DEFAULT_MANIFEST_URL
    registry_base_url: str = "https://thunderstore.io"
    registry_community: str = "lethal-company"
    index_cache_max_age: float = 3600.0  # seconds; 0 disables the disk cache
    http_timeout: float = 30.0
    user_agent: str = "hq-launcher/0.1"

    # DepotDownloader
    downloader_path: Path | None = None
    depot_app_id: str = "1966720"
    depot_id: str = "1966721"
    login_idle_prompt: float = 10.0  # seconds of silence before assuming a Steam Guard prompt
    login_timeout: float = 180.0
    downloader_release: str = "DepotDownloader_3.4.0"
    downloader_release_url: str = (
        "https://github.com/SteamRE/DepotDownloader/releases/download/{release}/{asset}.zip"
    )

    # Mod loader installed into every game version before the mods
    loader_owner: str = "BepInEx"
    loader_name: str = "BepInExPack"
    loader_version: str = "5.4.2304"

    default_config_url: str = "https://f.asta.rs/hq-launcher/default_config.zip"

    # Game launch; Linux runs the Windows build through Proton
    game_exe_name: str = "Lethal Company.exe"
    proton_dir: Path | None = None
    steam_client_path: Path | None = None

    @field_validator("data_dir", "downloader_path", "proton_dir", "steam_client_path")
    @classmethod
    def _expand(cls, v: Path | None) -> Path | None:
        return v.expanduser() if v is not None else None

    @property
    def paths(self) -> AppPaths:
        return AppPaths(self.data_dir)

    @property
    def resolved_downloader_path(self) -> Path:
        if self.downloader_path is not None:
            return self.downloader_path
        exe = "DepotDownloader.exe" if os.name == "nt" else "DepotDownloader"
        return self.paths.downloader_dir / exe


def _env_overrides() -> dict[str, str]:
    out = {}
    for field in LauncherSettings.model_fields:
        value = os.environ.get(ENV_PREFIX + field.upper())
        if value is not None:
            out[field] = value
    return out


def load_settings(
    data_dir: str | Path | None = None,
    overrides: dict | None = None,
) -> LauncherSettings:
    """Build settings from file, environment and explicit overrides.

    Raises ``Malformed`` when the settings file or a value fails validation.
    """
    values: dict = {}
    env = _env_overrides()
    base = Path(data_dir or env.get("data_dir") or default_data_dir()).expanduser()
    settings_file = base / SETTINGS_FILENAME
    if settings_file.exists():
        try:
            values.update(json.loads(settings_file.read_text(encoding="utf-8")))
        except json.JSONDecodeError as exc:
            raise Malformed(f"{settings_file} is not valid JSON: {exc}") from exc
        _log.debug("Loaded settings from %s", settings_file)

    values.update(env)
    values.update({k: v for k, v in (overrides or {}).items() if v is not None})
    values["data_dir"] = base
    try:
        return LauncherSettings.model_validate(values)
    except ValidationError as exc:
        raise Malformed(f"Invalid launcher settings: {exc}") from exc
