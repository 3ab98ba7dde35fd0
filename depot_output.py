"""
Translate raw DepotDownloader output lines into tagged events.

DepotDownloader has no machine-readable protocol (the patched ``-ipc`` build
only adds a few tokens), so everything the launcher reacts to is recognised
here by substring matching.  Nothing outside this module looks at raw text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Literal

BASIS_POINTS = 10_000

_ANSI_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*[@-~]|\][^\x07\x1b]*(?:\x07|\x1b\\)|.)")
_PROGRESS_RE = re.compile(r"^\s*(\d{1,3}(?:\.\d+)?)%\s*(.*)$")

IPC_TWO_FACTOR_TOKENS = (
    "steam_guard_device_code_required",
    "steam_guard_email_code_required",
    "steam_guard_code_required",
    "auth_polling_wait",
)
TWO_FACTOR_PHRASES = (
    "steam guard",
    "steamguard",
    "two-factor",
    "two factor",
    "2fa",
    "authentication code",
    "auth code",
    "security code",
    "emailed",
)


class DepotEventKind(Enum):
    OUTPUT = "output"
    PROGRESS = "progress"
    LOGIN_PROGRESS = "login_progress"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    TWO_FACTOR_INCORRECT = "two_factor_incorrect"
    MOBILE_CONFIRMATION_REQUIRED = "mobile_confirmation_required"
    LOGIN_FAILED = "login_failed"
    AUTH_PROMPT = "auth_prompt"


@dataclass(frozen=True)
class DepotEvent:
    kind: DepotEventKind
    line: str
    basis_points: int | None = None  # PROGRESS only, 0..10000
    detail: str | None = None


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text).replace("\r", "")


def parse_progress(line: str) -> tuple[int, str | None] | None:
    """``" 28.91% depot/file.bin"`` -> ``(2891, "depot/file.bin")``."""
    m = _PROGRESS_RE.match(line)
    if not m:
        return None
    bp = round(float(m.group(1)) * 100)
    detail = m.group(2).strip() or None
    return min(max(bp, 0), BASIS_POINTS), detail


def looks_like_mobile_confirmation(lowered: str) -> bool:
    return (
        "use the steam mobile app to confirm your sign in" in lowered
        or ("confirm" in lowered and "sign in" in lowered)
        or "steam mobile app" in lowered
    )


def looks_like_two_factor(lowered: str) -> bool:
    if any(token in lowered for token in IPC_TWO_FACTOR_TOKENS):
        return True
    if any(phrase in lowered for phrase in TWO_FACTOR_PHRASES):
        return True
    return "enter" in lowered and "code" in lowered


class DepotLineTranslator:
    """Stateless per-line translator for one DepotDownloader run.

    ``mode`` selects which vocabulary applies: during ``"login"`` prompts are
    expected and surfaced as login events; during ``"download"`` any prompt
    means the remembered login is unusable and becomes ``AUTH_PROMPT``.
    """

    def __init__(self, mode: Literal["login", "download"]):
        self.mode = mode

    def translate(self, raw: str) -> list[DepotEvent]:
        line = strip_ansi(raw).rstrip()
        if not line.strip():
            return []
        events = [DepotEvent(DepotEventKind.OUTPUT, line)]
        lowered = line.lower()
        if self.mode == "download":
            events.extend(self._download_events(line, lowered))
        else:
            events.extend(self._login_events(line, lowered))
        return events

    def _download_events(self, line: str, lowered: str) -> list[DepotEvent]:
        progress = parse_progress(line)
        if progress is not None:
            bp, detail = progress
            return [DepotEvent(DepotEventKind.PROGRESS, line, basis_points=bp, detail=detail)]
        if (
            looks_like_two_factor(lowered)
            or looks_like_mobile_confirmation(lowered)
            or ("enter" in lowered and "password" in lowered)
        ):
            return [DepotEvent(DepotEventKind.AUTH_PROMPT, line)]
        return []

    def _login_events(self, line: str, lowered: str) -> list[DepotEvent]:
        if "failed to authenticate with steam" in lowered and "no code was provided" in lowered:
            return [DepotEvent(DepotEventKind.LOGIN_FAILED, line, detail="Steam Guard code was not provided.")]
        if "previous 2-factor auth code" in lowered and "incorrect" in lowered:
            return [DepotEvent(DepotEventKind.TWO_FACTOR_INCORRECT, line)]

        out = []
        if "connecting to steam3" in lowered or "logging" in lowered:
            out.append(DepotEvent(DepotEventKind.LOGIN_PROGRESS, line))
        if looks_like_mobile_confirmation(lowered):
            out.append(DepotEvent(DepotEventKind.MOBILE_CONFIRMATION_REQUIRED, line))
        elif looks_like_two_factor(lowered):
            out.append(DepotEvent(DepotEventKind.TWO_FACTOR_REQUIRED, line))
        return out
