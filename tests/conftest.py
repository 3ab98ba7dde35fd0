"""
Shared fixtures and fakes for the HQ Launcher test suite.
"""

import io
import json
import queue
import zipfile
from pathlib import Path

import pytest
import requests

from depot_downloader import ProcessEnded
from install_state import InstallStateStore
from manifest_schema import RemoteManifest
from settings import LauncherSettings


def make_zip(path: Path, members: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for member, data in members.items():
            zf.writestr(member, data)
    return path


def zip_bytes(members: dict) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for member, data in members.items():
            zf.writestr(member, data)
    return buf.getvalue()


def mod_entry(owner="giosuel", name="Imperium", **extra) -> dict:
    return {"dev": owner, "name": name, **extra}


def manifest_dict(mods=(), manifests=None, chains=(), revision=1) -> dict:
    return {
        "version": revision,
        "manifests": manifests if manifests is not None else {"73": "2104414389591786342"},
        "chain_config": [list(c) for c in chains],
        "mods": list(mods),
    }


def make_manifest(**kwargs) -> RemoteManifest:
    return RemoteManifest.model_validate(manifest_dict(**kwargs))


def package_record(owner, name, *versions) -> dict:
    return {
        "owner": owner,
        "name": name,
        "full_name": f"{owner}-{name}",
        "versions": [{"version_number": v, "download_url": ""} for v in versions],
    }


# ── requests fakes ────────────────────────────────────────────────────────────

class FakeResponse:
    def __init__(self, status=200, payload=None, content=b"", headers=None):
        self.status_code = status
        self._payload = payload
        self.content = content if payload is None else json.dumps(payload).encode()
        self.headers = headers or {"content-length": str(len(self.content))}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return json.loads(self.content)

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Routes GETs by URL prefix; a route may map to a FakeResponse or an exception."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self.headers = {}

    def get(self, url, **kwargs):
        self.calls.append(url)
        for prefix, result in self.routes.items():
            if url.startswith(prefix):
                if isinstance(result, Exception):
                    raise result
                return result
        return FakeResponse(status=404)


# ── DepotDownloader fake ─────────────────────────────────────────────────────

class FakeDepotProcess:
    """Scripted stand-in for DepotProcess.

    ``lines`` are produced in order; the fake then blocks (returns None)
    until ``finish()`` is called, unless ``auto_exit`` is set.
    """

    def __init__(self, lines=(), exit_code=0, auto_exit=True):
        self._lines = queue.Queue()
        for line in lines:
            self._lines.put(line)
        if auto_exit:
            self._lines.put(None)
        self.exit_code = exit_code
        self.sent = []
        self.killed = False

    def push(self, line):
        self._lines.put(line)

    def finish(self, exit_code=None):
        if exit_code is not None:
            self.exit_code = exit_code
        self._lines.put(None)

    def read_line(self, timeout):
        try:
            line = self._lines.get(timeout=timeout)
        except queue.Empty:
            return None
        if line is None:
            self._lines.put(None)
            raise ProcessEnded()
        return line + "\n"

    def send_line(self, text):
        self.sent.append(text)

    def kill(self):
        self.killed = True

    def wait(self, timeout=None):
        return self.exit_code


# ── fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def settings(tmp_path):
    exe = tmp_path / "downloader" / "DepotDownloader"
    exe.parent.mkdir(parents=True)
    exe.write_text("stub", encoding="utf-8")
    return LauncherSettings(
        data_dir=tmp_path / "data",
        downloader_path=exe,
        index_cache_max_age=0,
        login_idle_prompt=10.0,
    )


@pytest.fixture
def paths(settings):
    return settings.paths


@pytest.fixture
def store(paths):
    return InstallStateStore(paths)
