#!/usr/bin/env python3
"""HQ Launcher — Entry Point"""

import argparse
import faulthandler
import getpass
import logging
import sys
import threading
import traceback
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path

import requests

from auth_session import AuthManager, LoginPhase
from config_chains import ChainConfigResolver, shared_dir_lister
from depot_downloader import DepotDownloader
from errors import LauncherError
from game_launcher import GameLauncher
from install_state import InstallStateStore
from manifest_schema import RemoteManifest, fetch_manifest
from orchestrator import InstallOrchestrator
from package_registry import PackageRegistryClient
from progress import (
    DEPOT_DOWNLOADER,
    DOWNLOAD_ERROR,
    DOWNLOAD_FINISHED,
    DOWNLOAD_PROGRESS,
    UPDATABLE_PROGRESS,
    EventBus,
)
from settings import LauncherSettings, load_settings
from update_checker import UpdateChecker


def setup_logging(log_dir: Path, verbose: bool = False) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "hq-launcher.log"

    handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    if verbose:
        console = logging.StreamHandler()
        console.setLevel(logging.INFO)
        console.setFormatter(logging.Formatter("%(levelname)-8s  %(message)s"))
        root.addHandler(console)

    # Keep third-party chatter out of the debug log.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return logging.getLogger("hqlauncher")


def install_crash_handler(logger: logging.Logger, log_dir: Path):
    def handle_exception(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.critical(
            "Unhandled exception:\n%s",
            "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        )

    sys.excepthook = handle_exception

    def handle_thread_exception(args):
        logger.critical(
            "Unhandled exception in thread %s:\n%s",
            args.thread.name if args.thread else "?",
            "".join(traceback.format_exception(args.exc_type, args.exc_value, args.exc_traceback)),
        )

    threading.excepthook = handle_thread_exception

    # faulthandler can't use logging after a hard crash, so it gets its own file
    crash_file = log_dir / "crash.log"
    faulthandler.enable(open(crash_file, "w"), all_threads=True)


# ── Wiring ────────────────────────────────────────────────────────────


@dataclass
class Launcher:
    settings: LauncherSettings
    bus: EventBus
    http: requests.Session
    store: InstallStateStore
    registry: PackageRegistryClient
    downloader: DepotDownloader
    auth: AuthManager
    orchestrator: InstallOrchestrator
    updates: UpdateChecker
    game: GameLauncher
    _manifest: RemoteManifest | None = None

    def manifest(self) -> RemoteManifest:
        if self._manifest is None:
            self._manifest = fetch_manifest(
                self.http, self.settings.manifest_url, timeout=self.settings.http_timeout
            )
        return self._manifest

    def chains(self) -> ChainConfigResolver:
        shared = self.settings.paths.shared_config_dir
        return ChainConfigResolver(self.manifest(), shared, shared_dir_lister(shared))


def build_launcher(settings: LauncherSettings) -> Launcher:
    bus = EventBus()
    http = requests.Session()
    http.headers["User-Agent"] = settings.user_agent
    paths = settings.paths
    store = InstallStateStore(paths)
    registry = PackageRegistryClient(
        session=http,
        base_url=settings.registry_base_url,
        community=settings.registry_community,
        cache_path=paths.registry_cache_path,
        cache_max_age=settings.index_cache_max_age,
        timeout=settings.http_timeout,
        user_agent=settings.user_agent,
    )
    downloader = DepotDownloader(settings)
    auth = AuthManager(downloader, bus)

    launcher = Launcher(settings, bus, http, store, registry, downloader, auth, None, None, None)
    launcher.orchestrator = InstallOrchestrator(
        settings,
        store,
        registry,
        downloader,
        manifest_provider=launcher.manifest,
        login_state=auth.login_state,
        bus=bus,
        http=http,
    )
    launcher.updates = UpdateChecker(store, registry, launcher.manifest, launcher.orchestrator, bus)
    launcher.game = GameLauncher(settings, store, launcher.orchestrator)
    return launcher


# ── Console observers ─────────────────────────────────────────────────


def print_events(name: str, payload):
    if name == DOWNLOAD_PROGRESS:
        detail = f"  {payload.detail}" if payload.detail else ""
        print(f"[{payload.overall_percent:5.1f}%] {payload.step_name}{detail}", flush=True)
    elif name == DOWNLOAD_FINISHED:
        print(f"Finished: {payload.path}")
    elif name == DOWNLOAD_ERROR:
        print(f"Error: {payload.message}", file=sys.stderr)
    elif name == UPDATABLE_PROGRESS:
        print(f"[{payload.checked}/{payload.total}] {payload.detail or ''}", flush=True)


# ── Commands ──────────────────────────────────────────────────────────


def cmd_manifest(launcher: Launcher, args) -> int:
    manifest = launcher.manifest()
    print(f"Manifest revision {manifest.revision}")
    print("Game versions: " + ", ".join(str(v) for v in manifest.game_versions))
    for mod in manifest.mods:
        state = "" if mod.enabled else "  (disabled)"
        print(f"  {mod.label}{state}")
    return 0


def cmd_versions(launcher: Launcher, args) -> int:
    versions = launcher.store.installed_versions()
    if not versions:
        print("No game versions installed.")
    for v in versions:
        mods = launcher.store.installed_mods(v)
        print(f"v{v}: {len(mods)} mod(s)")
    return 0


def cmd_login(launcher: Launcher, args) -> int:
    auth = launcher.auth
    launcher.downloader.ensure_installed(launcher.http)
    password = args.password or getpass.getpass("Steam password: ")
    prompts: list[str] = []
    prompt_ready = threading.Event()

    def on_event(name, payload):
        if name != DEPOT_DOWNLOADER:
            return
        if payload.type == "output" and args.verbose_login:
            print(payload.message)
        elif payload.type in ("needs_two_factor", "two_factor_incorrect"):
            prompts.append(payload.message or "Steam Guard code: ")
            prompt_ready.set()
        elif payload.type == "needs_mobile_confirmation":
            print("Confirm the sign in with the Steam mobile app...")

    unsubscribe = launcher.bus.subscribe(on_event)
    try:
        session_id = auth.start(args.username, password)
        session = auth.session(session_id)
        while not session.done.is_set():
            if prompt_ready.wait(0.2):
                prompt_ready.clear()
                code = input(f"{prompts[-1]} ").strip()
                auth.submit_code(session_id, code)
    finally:
        unsubscribe()

    if session.phase is LoginPhase.SUCCEEDED:
        print(f"Logged in as {args.username}.")
        return 0
    print(f"Login failed: {session.error}", file=sys.stderr)
    return 1


def cmd_logout(launcher: Launcher, args) -> int:
    launcher.auth.logout()
    print("Logged out.")
    return 0


def _run_task(launcher: Launcher, version: int, start) -> int:
    task = start(version)
    try:
        while not task.done.wait(0.2):
            pass
    except KeyboardInterrupt:
        if launcher.orchestrator.cancel(version):
            print("Cancelling...", file=sys.stderr)
        task.done.wait()
    for failure in task.failures:
        print(f"  ! {failure.label}: {failure.message}", file=sys.stderr)
    return 0 if task.error is None else 1


def cmd_install(launcher: Launcher, args) -> int:
    launcher.downloader.ensure_installed(launcher.http)
    return _run_task(launcher, args.version, launcher.orchestrator.start_install)


def cmd_update(launcher: Launcher, args) -> int:
    return _run_task(launcher, args.version, launcher.orchestrator.start_update)


def cmd_install_downloader(launcher: Launcher, args) -> int:
    if launcher.downloader.ensure_installed(launcher.http, force=args.force):
        print(f"DepotDownloader installed to {launcher.downloader.executable.parent}")
    else:
        print(f"DepotDownloader already present at {launcher.downloader.executable}")
    return 0


def cmd_launch(launcher: Launcher, args) -> int:
    game = launcher.game
    pid = game.launch_practice(args.version) if args.practice else game.launch(args.version)
    print(f"Started v{args.version} (pid {pid})")
    if not args.wait:
        return 0
    try:
        code = game.wait()
    except KeyboardInterrupt:
        game.stop()
        print("Game stopped.", file=sys.stderr)
        return 1
    print(f"Game exited with code {code}")
    return 0


def cmd_sync(launcher: Launcher, args) -> int:
    if not launcher.orchestrator.sync_latest_install():
        print("Nothing to sync.")
    return 0


def cmd_check_updates(launcher: Launcher, args) -> int:
    updatable = launcher.updates.check(args.version)
    if not updatable:
        print("All mods are up to date.")
        return 0
    print(f"{len(updatable)} mod(s) can be updated.")
    if args.apply:
        task = launcher.updates.apply(args.version, updatable)
        return 0 if task.error is None else 1
    return 0


def cmd_set_enabled(launcher: Launcher, args) -> int:
    manifest = launcher.manifest()
    mod = manifest.find_mod(args.owner, args.name)
    enabled = args.state == "on"
    if mod is None:
        launcher.store.set_mod_enabled(args.version, args.owner, args.name, enabled)
        return 0
    chains = launcher.chains()
    membership = chains.mods_sharing_chain(mod)
    targets = chains.mods_to_toggle(mod, enabled, launcher.store.disabled_mods())
    if not membership.confirmed:
        logging.getLogger("hqlauncher").info("Chain membership for %s is provisional", mod.label)
    for target in targets:
        launcher.store.set_mod_enabled(args.version, target.owner, target.name, enabled)
        print(f"{'Enabled' if enabled else 'Disabled'} {target.label}")
    return 0


def cmd_chain(launcher: Launcher, args) -> int:
    written = launcher.chains().propagate_edit(args.path, args.section, args.entry, args.value)
    for rel in written:
        print(f"Updated {rel}")
    return 0


COMMANDS = {
    "manifest": cmd_manifest,
    "versions": cmd_versions,
    "login": cmd_login,
    "logout": cmd_logout,
    "install": cmd_install,
    "update": cmd_update,
    "sync": cmd_sync,
    "check-updates": cmd_check_updates,
    "set-enabled": cmd_set_enabled,
    "chain": cmd_chain,
    "install-downloader": cmd_install_downloader,
    "launch": cmd_launch,
}


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="HQ Launcher")
    parser.add_argument("--data-dir")
    parser.add_argument("--manifest-url")
    parser.add_argument("--community", dest="registry_community")
    parser.add_argument("--downloader-path")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("manifest", help="show the remote manifest")
    sub.add_parser("versions", help="list installed game versions")

    p = sub.add_parser("login", help="log in to Steam through DepotDownloader")
    p.add_argument("username")
    p.add_argument("--password")
    p.add_argument("--verbose-login", action="store_true")

    sub.add_parser("logout", help="forget the remembered Steam login")

    for name in ("install", "update"):
        p = sub.add_parser(name, help=f"{name} a game version")
        p.add_argument("version", type=int)

    sub.add_parser("sync", help="update the newest install if the manifest changed")

    p = sub.add_parser("check-updates", help="list mods with newer resolved versions")
    p.add_argument("version", type=int)
    p.add_argument("--apply", action="store_true")

    p = sub.add_parser("set-enabled", help="enable or disable a mod (and its chained mods)")
    p.add_argument("version", type=int)
    p.add_argument("owner")
    p.add_argument("name")
    p.add_argument("state", choices=["on", "off"])

    p = sub.add_parser("chain", help="set a config entry and mirror it across its chain")
    p.add_argument("path")
    p.add_argument("section")
    p.add_argument("entry")
    p.add_argument("value")

    p = sub.add_parser("install-downloader", help="download DepotDownloader into the data directory")
    p.add_argument("--force", action="store_true")

    p = sub.add_parser("launch", help="start an installed game version")
    p.add_argument("version", type=int)
    p.add_argument("--practice", action="store_true", help="enable the practice mods for this run")
    p.add_argument("--wait", action="store_true", help="stay attached until the game exits")

    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(
            args.data_dir,
            {
                "manifest_url": args.manifest_url,
                "registry_community": args.registry_community,
                "downloader_path": args.downloader_path,
            },
        )
    except LauncherError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    log_dir = settings.paths.logs_dir
    logger = setup_logging(log_dir, args.verbose)
    install_crash_handler(logger, log_dir)
    logger.info("Starting HQ Launcher (%s)", args.command)

    launcher = build_launcher(settings)
    launcher.bus.subscribe(print_events)
    try:
        return COMMANDS[args.command](launcher, args)
    except LauncherError as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
