"""
Threshold version pinning.

Decides, for one manifest ModEntry and one game version, whether the mod is
installed at all and which package version to ask the registry for.

Public API
----------
resolve(mod, game_version) -> PinDecision
incompatible_reason(mod, game_version) -> str
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from manifest_schema import NO_PIN, ModEntry

PinKind = Literal["not_applicable", "latest", "pinned"]


@dataclass(frozen=True)
class PinDecision:
    kind: PinKind
    version: str | None = None  # only set for "pinned"
    reason: str = ""  # only set for "not_applicable"

    @property
    def applicable(self) -> bool:
        return self.kind != "not_applicable"

    @classmethod
    def not_applicable(cls, reason: str) -> PinDecision:
        return cls("not_applicable", reason=reason)

    @classmethod
    def latest(cls) -> PinDecision:
        return cls("latest")

    @classmethod
    def pinned(cls, version: str) -> PinDecision:
        return cls("pinned", version=version)


def incompatible_reason(mod: ModEntry, game_version: int) -> str:
    if not mod.enabled:
        return " (disabled in manifest)"
    parts = []
    if mod.low_bound is not None and game_version < mod.low_bound:
        parts.append(f" (requires >= {mod.low_bound})")
    if mod.high_bound is not None and game_version > mod.high_bound:
        parts.append(f" (requires <= {mod.high_bound})")
    return "".join(parts)


def resolve(mod: ModEntry, game_version: int) -> PinDecision:
    """Resolve ``mod`` against ``game_version``.

    The bounds check and the pin-key selection are independent filters,
    applied in that order: a pin key below ``low_bound`` is simply never
    reached for versions the bounds reject.
    """
    reason = incompatible_reason(mod, game_version)
    if reason:
        return PinDecision.not_applicable(reason)

    eligible = [k for k in mod.version_pins if k <= game_version]
    if not eligible:
        return PinDecision.latest()

    pinned = mod.version_pins[max(eligible)]
    if not pinned or pinned == NO_PIN:
        return PinDecision.latest()
    return PinDecision.pinned(pinned)
