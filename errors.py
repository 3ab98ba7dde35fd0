"""
Error taxonomy for HQ Launcher.

Every failure that can end an install, update, update check, login or game
launch is one of the classes below.  Messages are written for direct display
to the user; callers never need to reformat them.
"""

from __future__ import annotations


class LauncherError(Exception):
    """Base class for all launcher failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class AuthRequired(LauncherError):
    """A depot download was requested without a remembered login."""

    def __init__(self, message: str = "Not logged in to Steam. Please login first."):
        super().__init__(message)


class InvalidSession(LauncherError):
    """A code was submitted for a login session that is gone or not waiting for one."""


class AlreadyRunning(LauncherError):
    """A login session is already in flight for this process."""

    def __init__(self, message: str = "A login is already in progress."):
        super().__init__(message)


class Busy(LauncherError):
    """Another install/update task owns this game version."""

    def __init__(self, version: int):
        super().__init__(
            f"An install or update is already in progress for v{version}. "
            "Wait for it to finish or cancel it first."
        )
        self.version = version


class NotFound(LauncherError):
    """A package identity is missing from the registry index."""

    def __init__(self, owner: str, name: str):
        super().__init__(f"{owner}-{name} was not found in the package list.")
        self.owner = owner
        self.name = name


class RegistryUnavailable(LauncherError):
    """The registry index or a package download could not be fetched.

    Retryable by the caller; nothing inside the launcher retries it.
    """


class Cancelled(LauncherError):
    """The user cancelled the running game download."""

    def __init__(self, version: int):
        super().__init__(f"Download of v{version} was cancelled.")
        self.version = version


class SubprocessFailure(LauncherError):
    """DepotDownloader exited non-zero or its output stream ended unexpectedly."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class GameRunning(LauncherError):
    """A launch was requested while the tracked game process is still alive."""

    def __init__(self, message: str = "The game is already running."):
        super().__init__(message)


class Malformed(LauncherError):
    """The remote manifest (or a local state file) failed schema/range validation."""
