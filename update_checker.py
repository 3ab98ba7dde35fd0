"""
Find installed mods that are behind what the manifest resolves to.

``check`` never writes install state; ``apply`` hands the result to the
orchestrator as an update restricted to those mods.
"""

from __future__ import annotations

import logging

from errors import LauncherError, NotFound
from install_state import InstallStateStore
from manifest_schema import ModIdentity, RemoteManifest
from orchestrator import DownloadTask, InstallOrchestrator
from package_registry import PackageRegistryClient, compare_versions
from progress import (
    UPDATABLE_ERROR,
    UPDATABLE_FINISHED,
    UPDATABLE_PROGRESS,
    EventBus,
    TaskErrorPayload,
    TaskUpdatableProgressPayload,
)
from version_pins import resolve

_log = logging.getLogger(__name__)


class UpdateChecker:
    def __init__(
        self,
        store: InstallStateStore,
        registry: PackageRegistryClient,
        manifest_provider,
        orchestrator: InstallOrchestrator | None = None,
        bus: EventBus | None = None,
    ):
        self.store = store
        self.registry = registry
        self.manifest_provider = manifest_provider
        self.orchestrator = orchestrator
        self.bus = bus or EventBus()

    def check(self, version: int) -> list[ModIdentity]:
        """Mods whose resolved target differs from the installed one, plus missing ones."""
        try:
            return self._check(version)
        except LauncherError as e:
            self.bus.emit(UPDATABLE_ERROR, TaskErrorPayload(version, e.message))
            raise

    def _check(self, version: int) -> list[ModIdentity]:
        manifest: RemoteManifest = self.manifest_provider()
        installed = self.store.installed_mods(version)
        candidates = [m for m in manifest.mods if resolve(m, version).applicable]
        total = len(candidates)

        updatable: list[ModIdentity] = []
        labels: list[str] = []
        for checked, mod in enumerate(candidates, start=1):
            detail = None
            try:
                target = self.registry.resolve_version(mod, resolve(mod, version))
            except NotFound as e:
                _log.warning("Update check skipped %s: %s", mod.label, e)
                detail = e.message
            else:
                rec = installed.get(mod.identity)
                if rec is None:
                    detail = f"{mod.label}: not installed -> {target}"
                elif compare_versions(rec.version, target) != 0:
                    detail = f"{mod.label}: {rec.version} -> {target}"
                if detail is not None:
                    updatable.append(mod.identity)
                    labels.append(mod.label)
            self.bus.emit(
                UPDATABLE_PROGRESS,
                TaskUpdatableProgressPayload(version, total, checked, list(labels), detail),
            )

        self.bus.emit(
            UPDATABLE_FINISHED,
            TaskUpdatableProgressPayload(version, total, total, list(labels)),
        )
        _log.info("v%d: %d of %d mod(s) updatable", version, len(updatable), total)
        return updatable

    def apply(self, version: int, identities: list[ModIdentity]) -> DownloadTask:
        if self.orchestrator is None:
            raise RuntimeError("UpdateChecker.apply needs an orchestrator")
        return self.orchestrator.apply_updates(version, identities)
