"""
Tests for chain grouping, edit propagation and the shared config directory.
"""

import os

import pytest
import requests

from config_chains import (
    ChainConfigResolver,
    ensure_config_link,
    ensure_default_config,
    list_shared_config_files,
    set_cfg_entry,
    shared_dir_lister,
)
from manifest_schema import ModIdentity
from tests.conftest import FakeResponse, FakeSession, make_manifest, mod_entry, zip_bytes

CHAIN = ("giosuel.Imperium.cfg", "giosuel.Imperium.old.cfg")


def chained_manifest():
    return make_manifest(
        chains=[CHAIN],
        mods=[
            mod_entry("giosuel", "Imperium"),
            mod_entry("giosuel", "ImperiumLegacy"),
            mod_entry("Hardy", "LCMaxSoundsFix"),
        ],
    )


# ── membership ───────────────────────────────────────────────────────────────

def test_chain_for():
    resolver = ChainConfigResolver(chained_manifest())
    assert resolver.chain_for("giosuel.imperium.cfg") == frozenset(CHAIN)
    assert resolver.chain_for("other.cfg") is None


def test_heuristic_membership_is_provisional():
    manifest = chained_manifest()
    resolver = ChainConfigResolver(manifest)
    membership = resolver.mods_sharing_chain(manifest.find_mod("giosuel", "Imperium"))
    assert not membership.confirmed
    assert ModIdentity("giosuel", "imperiumlegacy") in membership.identities
    assert ModIdentity("hardy", "lcmaxsoundsfix") not in membership.identities


def test_recorded_listing_supersedes_heuristic():
    manifest = chained_manifest()
    resolver = ChainConfigResolver(manifest)
    imperium = manifest.find_mod("giosuel", "Imperium")
    legacy = manifest.find_mod("giosuel", "ImperiumLegacy")
    hardy = manifest.find_mod("Hardy", "LCMaxSoundsFix")
    resolver.record_config_files(imperium, ["giosuel.Imperium.cfg"])
    resolver.record_config_files(legacy, [])
    resolver.record_config_files(hardy, ["Hardy.cfg"])

    membership = resolver.mods_sharing_chain(imperium)
    assert membership.confirmed
    assert membership.identities == frozenset()


def test_lister_confirms_membership(tmp_path):
    shared = tmp_path / "shared"
    shared.mkdir()
    (shared / "giosuel.Imperium.cfg").write_text("", encoding="utf-8")
    (shared / "giosuel.Imperium.old.cfg").write_text("", encoding="utf-8")
    manifest = chained_manifest()
    resolver = ChainConfigResolver(manifest, shared, shared_dir_lister(shared))

    membership = resolver.mods_sharing_chain(manifest.find_mod("giosuel", "Imperium"))
    assert membership.confirmed
    assert ModIdentity("giosuel", "imperiumlegacy") in membership.identities


def test_mods_to_toggle_skips_mods_already_in_state():
    manifest = chained_manifest()
    resolver = ChainConfigResolver(manifest)
    imperium = manifest.find_mod("giosuel", "Imperium")

    toggled = resolver.mods_to_toggle(imperium, enabled=False, disabled=set())
    assert [m.label for m in toggled] == ["giosuel-Imperium", "giosuel-ImperiumLegacy"]

    already = {ModIdentity("giosuel", "imperiumlegacy")}
    toggled = resolver.mods_to_toggle(imperium, enabled=False, disabled=already)
    assert [m.label for m in toggled] == ["giosuel-Imperium"]


# ── propagation ──────────────────────────────────────────────────────────────

def test_edit_mirrored_to_chain_member_once(tmp_path):
    resolver = ChainConfigResolver(chained_manifest(), tmp_path)
    calls = []
    written = resolver.propagate_edit(
        "giosuel.Imperium.cfg", "General", "Speed", "2",
        editor=lambda path, *args: calls.append((path.name, args)),
    )
    assert written == ["giosuel.Imperium.cfg", "giosuel.Imperium.old.cfg"]
    assert sorted(c[0] for c in calls) == sorted(CHAIN)
    assert all(args == ("General", "Speed", "2") for _, args in calls)


def test_non_chain_edit_only_touches_itself(tmp_path):
    resolver = ChainConfigResolver(chained_manifest(), tmp_path)
    written = resolver.propagate_edit("Hardy.cfg", "General", "Volume", "1")
    assert written == ["Hardy.cfg"]
    assert list_shared_config_files(tmp_path) == ["Hardy.cfg"]


def test_propagate_writes_real_files(tmp_path):
    (tmp_path / "giosuel.Imperium.cfg").write_text("[General]\nSpeed = 1\n", encoding="utf-8")
    resolver = ChainConfigResolver(chained_manifest(), tmp_path)
    resolver.propagate_edit("giosuel.Imperium.cfg", "General", "Speed", "3")
    for name in CHAIN:
        assert "Speed = 3" in (tmp_path / name).read_text(encoding="utf-8")


def test_propagate_requires_root():
    with pytest.raises(ValueError):
        ChainConfigResolver(chained_manifest()).propagate_edit("a.cfg", "s", "e", "v")


# ── set_cfg_entry ────────────────────────────────────────────────────────────

def test_set_cfg_entry_replaces_existing(tmp_path):
    cfg = tmp_path / "a.cfg"
    cfg.write_text(
        "[General]\n## Speed multiplier\n# Setting type: Int32\nSpeed = 1\n\n[Other]\nSpeed = 9\n",
        encoding="utf-8",
    )
    set_cfg_entry(cfg, "General", "Speed", "5")
    text = cfg.read_text(encoding="utf-8")
    assert "Speed = 5" in text
    assert "Speed = 9" in text
    assert "## Speed multiplier" in text


def test_set_cfg_entry_adds_entry_to_section(tmp_path):
    cfg = tmp_path / "a.cfg"
    cfg.write_text("[General]\nSpeed = 1\n\n[Other]\nX = 2\n", encoding="utf-8")
    set_cfg_entry(cfg, "General", "Jump", "true")
    lines = cfg.read_text(encoding="utf-8").splitlines()
    assert lines.index("Jump = true") < lines.index("[Other]")


def test_set_cfg_entry_creates_file_and_section(tmp_path):
    cfg = tmp_path / "sub" / "new.cfg"
    set_cfg_entry(cfg, "General", "Speed", "1")
    assert cfg.read_text(encoding="utf-8") == "[General]\nSpeed = 1\n"


# ── shared config dir ────────────────────────────────────────────────────────

@pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
def test_link_merges_existing_dir_add_only(tmp_path):
    shared = tmp_path / "shared"
    shared.mkdir()
    (shared / "a.cfg").write_text("shared", encoding="utf-8")
    version_cfg = tmp_path / "v73" / "BepInEx" / "config"
    version_cfg.mkdir(parents=True)
    (version_cfg / "a.cfg").write_text("local", encoding="utf-8")
    (version_cfg / "b.cfg").write_text("local-b", encoding="utf-8")

    assert ensure_config_link(version_cfg, shared) is True
    assert version_cfg.is_symlink()
    assert (shared / "a.cfg").read_text(encoding="utf-8") == "shared"
    assert (shared / "b.cfg").read_text(encoding="utf-8") == "local-b"
    # idempotent
    assert ensure_config_link(version_cfg, shared) is True


def test_default_config_seeds_empty_dir(tmp_path):
    shared = tmp_path / "shared"
    payload = zip_bytes({"BepInEx/config/mod.cfg": "x", "BepInEx/config/BepInEx.cfg": "loader"})
    session = FakeSession({"https://example.test/": FakeResponse(content=payload)})
    assert ensure_default_config(shared, "https://example.test/default.zip", session) is True
    assert list_shared_config_files(shared) == ["mod.cfg"]


def test_default_config_skipped_when_populated(tmp_path):
    shared = tmp_path / "shared"
    shared.mkdir()
    (shared / "mod.cfg").write_text("mine", encoding="utf-8")
    session = FakeSession()
    assert ensure_default_config(shared, "https://example.test/default.zip", session) is False
    assert session.calls == []


def test_default_config_download_failure_is_not_fatal(tmp_path):
    session = FakeSession({"https://example.test/": requests.ConnectionError("offline")})
    assert ensure_default_config(tmp_path / "shared", "https://example.test/d.zip", session) is False
