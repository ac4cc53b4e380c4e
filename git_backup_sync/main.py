#!/usr/bin/env python3
"""
Incremental backup of a GitHub account's repositories to removable drives

Copyright 2025 HyperSec

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

import argparse
import os
import signal
import subprocess
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table
from rich_argparse import ArgumentDefaultsRichHelpFormatter
from tqdm import tqdm

from .base import RepositoryLister, RepositoryRef, RunOutcome, RunStats, UpdateOutcome
from .change_detector import ChangeDetector, Fingerprint, classify
from .config import BackupConfig, check_dependencies, load_config, require_dependencies
from .errors import ConfigError, DependencyError, ListError, LockError, MirrorError
from .github_manager import GitHubLister
from .mirror_store import GIT_ENV, MirrorStore, robust_rmtree, stderr_excerpt
from .replicator import ReplicationCoordinator
from .run_lock import RunLock

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_DEPENDENCY = 2
EXIT_LISTING = 3
EXIT_NO_REPOSITORIES = 4
EXIT_LOCKED = 5
EXIT_INTERRUPTED = 130

VERIFY_TIMEOUT = 600


def setup_logging(
    verbose: bool = False, log_file: str = "git-backup-sync.log", log_dir: str = "logs"
):
    """Setup console and file logging with loguru"""

    logger.remove()

    log_dir_path = Path(log_dir)
    log_dir_path.mkdir(parents=True, exist_ok=True)
    log_file_path = log_dir_path / log_file

    log_level = "DEBUG" if verbose else "INFO"

    console_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<level>{message}</level>"
    )
    logger.add(sys.stdout, format=console_format, level=log_level, colorize=True)

    file_format = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}"
    logger.add(
        log_file_path,
        format=file_format,
        level=log_level,
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
    )

    logger.debug(f"Log file: {log_file_path}")
    return logger


class BackupOrchestrator:
    """
    Drives one backup run.

    INIT -> lock -> list -> (update -> classify -> replicate -> cleanup) per
    repository -> final cleanup -> unlock -> summary. One repository failing
    never stops the batch; the master store is never cleaned up.
    """

    def __init__(
        self,
        config: BackupConfig,
        lister: Optional[RepositoryLister] = None,
        store: Optional[MirrorStore] = None,
        detector: Optional[ChangeDetector] = None,
        replicator: Optional[ReplicationCoordinator] = None,
        lock: Optional[RunLock] = None,
    ):
        self.config = config
        self.lister = lister or GitHubLister(
            account=config.account,
            token=config.token,
            api_url=config.api_url,
            timeout=config.api_timeout,
        )
        self.store = store or MirrorStore(
            config.master_root, network_timeout=config.network_timeout
        )
        self.detector = detector or ChangeDetector()
        self.replicator = replicator or ReplicationCoordinator(
            scratch_root=config.scratch_root,
            namespace=config.namespace,
            require_mount=config.require_mount,
            sync_timeout=config.sync_timeout,
        )
        self.lock = lock or RunLock(config.lock_file)
        self.targets = config.replication_targets
        self.stop_requested = False
        self._previous_handlers = {}

    def run(self) -> RunStats:
        """
        Execute one run.

        Raises:
            LockError: another live run holds the lock; nothing was touched
            ListError: the repository list could not be fetched
        """
        stats = RunStats(
            master_root=str(self.store.master_root),
            targets=[t.mount_path for t in self.targets],
        )
        started = False

        try:
            with self.lock:
                started = True
                logger.info("=== Git Backup Started ===")
                self._install_signal_handlers()
                try:
                    self._prepare_scratch()
                    self._log_targets()

                    refs = self.lister.list_repositories()
                    if not refs:
                        logger.warning(
                            f"[LIST] No repositories found for account: {self.config.account}"
                        )
                        stats.outcome = RunOutcome.NOTHING_TO_DO
                        return stats

                    stats.total = len(refs)
                    logger.info(f"[LIST] Found {len(refs)} repositories")
                    self._process_all(refs, stats)
                finally:
                    self._final_cleanup()
                    self._restore_signal_handlers()
        finally:
            if started:
                self.report(stats)

        return stats

    def _process_all(self, refs: List[RepositoryRef], stats: RunStats):
        with tqdm(
            refs, desc="Backing up", unit="repo", disable=not self.config.show_progress
        ) as pbar:
            for ref in pbar:
                if self.stop_requested:
                    logger.warning(
                        f"[STOP] Stop requested, {stats.total - stats.processed} repositories not processed"
                    )
                    stats.outcome = RunOutcome.INTERRUPTED
                    break
                pbar.set_description(f"[BACKUP] {ref.name}")
                self.process_repository(ref, stats)
                pbar.set_postfix(
                    {
                        "OK": stats.replicated,
                        "SKIP": stats.skipped_unchanged,
                        "FAIL": stats.failed,
                    }
                )

        if stats.outcome is None:
            stats.outcome = RunOutcome.COMPLETED

    def process_repository(
        self, ref: RepositoryRef, stats: RunStats
    ) -> Optional[UpdateOutcome]:
        """Update, classify and, when needed, replicate one repository"""
        name = ref.name
        mirror_path = self.store.mirror_path(name)

        try:
            before = None
            if self.store.has_mirror(name):
                if self.store.is_pending(name):
                    before = Fingerprint.unknown("replication pending from an earlier run")
                else:
                    before = self.detector.observe(mirror_path)

            # Pending until a target holds this update, even if the run dies mid-fetch
            self.store.mark_pending(name)
            existed_before = self.store.ensure_mirror(ref)
            after = self.detector.observe(mirror_path)
            outcome = classify(before, after, was_new=not existed_before)
            logger.debug(f"[DETECT] {name}: {before} -> {after} = {outcome.value}")

            if outcome is UpdateOutcome.UNCHANGED:
                logger.info(f"[SKIP] {name} unchanged since last backup")
                self.store.clear_pending(name)
                stats.skipped_unchanged += 1
                return outcome

            if outcome is UpdateOutcome.FAILED:
                logger.warning(
                    f"[DETECT] Could not verify {name} after update, replicating anyway"
                )

            report = self.replicator.replicate(
                name, mirror_path, self.targets, self.config.working_copy
            )
            if report.any_target_succeeded:
                self.store.clear_pending(name)
                stats.replicated += 1
                logger.info(
                    f"[SUCCESS] {name} ({outcome.value}) replicated to {len(report.succeeded)}/{len(self.targets)} targets"
                )
            else:
                stats.record_failure(name)
                logger.error(f"[FAIL] {name} ({outcome.value}) reached no target")
            return outcome

        except MirrorError as e:
            logger.error(f"[FAIL] {name}: {e}")
            stats.record_failure(name)
        except Exception as e:
            logger.exception(
                f"[ERROR] Exception while backing up {name}: {type(e).__name__}: {e}"
            )
            stats.record_failure(name)
        finally:
            self.replicator.cleanup_working_tree(name)
        return None

    def _log_targets(self):
        if not self.targets:
            logger.warning("[CONFIG] No backup targets configured")
        for target in self.targets:
            if target.is_available(self.config.require_mount):
                logger.info(f"[CONFIG] Target mounted: {target}")
            else:
                logger.warning(f"[CONFIG] Target not mounted: {target}")

    def _prepare_scratch(self):
        scratch = Path(self.config.scratch_root)
        if scratch.exists():
            logger.debug(f"[CLEANUP] Removing leftovers in {scratch}")
            robust_rmtree(scratch)
        scratch.mkdir(parents=True, exist_ok=True)

    def _final_cleanup(self):
        scratch = Path(self.config.scratch_root)
        if scratch.exists() and robust_rmtree(scratch):
            logger.info(f"[CLEANUP] Removed scratch directory: {scratch}")

    def request_stop(self, signum=None, frame=None):
        if self.stop_requested:
            raise KeyboardInterrupt
        self.stop_requested = True
        logger.warning(
            "[STOP] Stop requested; finishing the current repository (signal again to abort)"
        )

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self.request_stop)

    def _restore_signal_handlers(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}

    def report(self, stats: RunStats):
        logger.info("=" * 60)
        logger.info("[SUMMARY] BACKUP SUMMARY")
        logger.info("=" * 60)
        logger.info(f"[TOTAL] Total repositories: {stats.total}")
        logger.info(f"[SUCCESS] Replicated: {stats.replicated}")
        logger.info(f"[SKIP] Unchanged: {stats.skipped_unchanged}")
        logger.info(f"[FAIL] Failed: {stats.failed}")
        if stats.failed_repositories:
            logger.info(f"[FAIL] Failed repositories: {', '.join(stats.failed_repositories)}")
        logger.info(f"[STORE] Master store: {stats.master_root}")
        logger.info(
            f"[STORE] Targets: {', '.join(stats.targets) if stats.targets else 'none'}"
        )
        if stats.outcome is RunOutcome.INTERRUPTED:
            logger.warning("[STOP] Run interrupted before all repositories were processed")
        logger.info("=== Git Backup Completed ===")


def directory_size_mb(path: Path) -> float:
    total = 0
    for item in path.rglob("*"):
        if item.is_file():
            total += item.stat().st_size
    return total / 1024 / 1024


def list_backups(config: BackupConfig, console: Optional[Console] = None) -> int:
    """Show mirrors in the master store and which mounted targets hold them"""
    console = console or Console()
    store = MirrorStore(config.master_root)
    mirrors = store.list_mirrors()

    if not mirrors:
        logger.info(f"No mirrors found in {config.master_root}")
        return 0

    targets = [
        t for t in config.replication_targets if t.is_available(config.require_mount)
    ]

    table = Table(title=f"Mirrors in {config.master_root}")
    table.add_column("Repository")
    table.add_column("Size (MB)", justify="right")
    table.add_column("Modified")
    table.add_column("Pending")
    table.add_column("On targets", justify="right")

    for mirror in mirrors:
        name = mirror.name[: -len(".git")]
        on_targets = sum(
            1 for t in targets if (t.mirrors_dir(config.namespace) / mirror.name).is_dir()
        )
        table.add_row(
            name,
            f"{directory_size_mb(mirror):.2f}",
            datetime.fromtimestamp(mirror.stat().st_mtime).isoformat(timespec="seconds"),
            "yes" if store.is_pending(name) else "",
            f"{on_targets}/{len(targets)}",
        )

    console.print(table)
    return 0


def resolve_verify_path(path: Path, namespace: str) -> Path:
    # Accept a target root as well as a mirrors directory
    candidate = path / namespace / "mirrors"
    return candidate if candidate.is_dir() else path


def verify_backup_integrity(
    backup_path: str, namespace: str, timeout: Optional[int] = VERIFY_TIMEOUT
) -> int:
    """Run git fsck over every mirror under ``backup_path``"""
    root = Path(backup_path)
    if not root.is_dir():
        logger.error(f"[VERIFY] Backup path does not exist: {backup_path}")
        return EXIT_CONFIG

    root = resolve_verify_path(root, namespace)
    logger.info(f"[VERIFY] Verifying mirrors in: {root}")

    verified = 0
    failed = 0
    for mirror in sorted(p for p in root.glob("*.git") if p.is_dir()):
        try:
            result = subprocess.run(
                [
                    "git",
                    "--git-dir",
                    str(mirror),
                    "fsck",
                    "--connectivity-only",
                    "--no-progress",
                ],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                env=GIT_ENV,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            failed += 1
            logger.error(f"[VERIFY] {mirror.name}: git fsck timed out after {timeout}s")
            continue
        except OSError as e:
            failed += 1
            logger.error(f"[VERIFY] {mirror.name}: could not run git fsck: {e}")
            continue

        if result.returncode == 0:
            verified += 1
            logger.debug(f"[VERIFY] {mirror.name}: OK")
        else:
            failed += 1
            logger.error(f"[VERIFY] {mirror.name}: {stderr_excerpt(result.stderr)}")

    logger.info("=" * 50)
    logger.info(f"[VERIFY] Verification complete: {verified}/{verified + failed} mirrors valid")
    if failed:
        logger.error(f"[VERIFY] {failed} mirror(s) failed verification")
        return 1
    return EXIT_OK


def validate_configuration(config: BackupConfig) -> int:
    """Report on configuration, dependencies and target availability"""
    logger.info("[CONFIG] Validating configuration...")
    issues = []

    logger.info(f"[CONFIG] Account: {config.account}")
    logger.info(
        f"[CONFIG] Credential: {'configured' if config.token else 'none (public repositories only)'}"
    )
    logger.info(f"[CONFIG] Master store: {config.master_root}")
    logger.info(f"[CONFIG] Scratch directory: {config.scratch_root}")
    logger.info(f"[CONFIG] Working copies: {'enabled' if config.working_copy else 'disabled'}")

    missing = check_dependencies()
    if missing:
        issues.append(f"Missing dependencies: {' '.join(missing)}")
    else:
        logger.info("[CONFIG] git and rsync available")

    for target in config.replication_targets:
        if target.is_available(config.require_mount):
            logger.info(f"[CONFIG] Target mounted: {target}")
        else:
            logger.warning(f"[CONFIG] Target not mounted: {target}")

    logger.info("=" * 50)
    if issues:
        for issue in issues:
            logger.error(f"[CONFIG] {issue}")
        return EXIT_DEPENDENCY
    logger.info("[CONFIG] Configuration valid")
    return EXIT_OK


def get_env_default(env_var: str, fallback=None):
    """Get value from environment or .env file"""
    return os.getenv(env_var, fallback)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="git-backup-sync",
        description="[bold blue]Git Backup Sync[/bold blue] - Incrementally back up a GitHub account's repositories to removable drives",
        epilog="""
[bold green]Examples:[/bold green]
  [dim]# Back up to two USB drives[/dim]
  [yellow]%(prog)s[/yellow] [cyan]--account[/cyan] octocat [cyan]--targets[/cyan] [magenta]/media/usb1 /media/usb2[/magenta]

  [dim]# Use settings from config.env and include browsable checkouts[/dim]
  [yellow]%(prog)s[/yellow] [cyan]--working-copy[/cyan]

  [dim]# Verify the mirrors on a drive[/dim]
  [yellow]%(prog)s[/yellow] [cyan]--verify[/cyan] [magenta]/media/usb1[/magenta]
        """,
        formatter_class=ArgumentDefaultsRichHelpFormatter,
    )

    repo_group = parser.add_argument_group("Backup Settings")
    repo_group.add_argument(
        "--account",
        "-u",
        metavar="USER",
        help="GitHub account whose repositories are backed up (env: GITHUB_USER)",
    )
    repo_group.add_argument(
        "--targets",
        nargs="+",
        metavar="PATH",
        help="Mount paths of the backup drives (env: BACKUP_TARGETS, space-separated)",
    )
    repo_group.add_argument(
        "--master-dir",
        metavar="DIR",
        help="Persistent master store of bare mirrors (env: MASTER_DIR)",
    )
    repo_group.add_argument(
        "--tmp-dir",
        metavar="DIR",
        help="Scratch directory, removed at the end of every run (env: TMP_DIR)",
    )
    repo_group.add_argument(
        "--working-copy",
        action="store_true",
        default=None,
        help="Also replicate a checked-out working tree (env: WORKING_COPY)",
    )
    repo_group.add_argument(
        "--namespace",
        metavar="NAME",
        help="Directory on each target holding mirrors/ and checkouts/ (env: BACKUP_NAMESPACE)",
    )
    repo_group.add_argument(
        "--lock-file",
        metavar="FILE",
        help="Run lock marker (env: LOCK_FILE)",
    )
    repo_group.add_argument(
        "--env-file",
        metavar="FILE",
        help="dotenv file to load (default: config.env or .env if present)",
    )
    repo_group.add_argument(
        "--config-file",
        metavar="FILE",
        help="YAML file with settings (overridden by environment and flags)",
    )

    diag_group = parser.add_argument_group("Diagnostic Commands")
    diag_group.add_argument(
        "--list", action="store_true", help="List mirrors in the master store"
    )
    diag_group.add_argument(
        "--verify",
        nargs="?",
        const="",
        metavar="PATH",
        help="Verify mirror integrity (master store, a target root or a mirrors directory)",
    )
    diag_group.add_argument(
        "--validate-config",
        action="store_true",
        help="Validate configuration, dependencies and targets",
    )

    log_group = parser.add_argument_group("Logging Options")
    log_group.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    log_group.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable the progress bar (useful under cron)",
    )
    log_group.add_argument(
        "--log-file",
        default=get_env_default("LOG_FILE", "git-backup-sync.log"),
        metavar="FILE",
        help="Log file name (env: LOG_FILE)",
    )
    log_group.add_argument(
        "--log-dir",
        default=get_env_default("LOG_DIR", "logs"),
        metavar="DIR",
        help="Log directory (env: LOG_DIR)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose, log_file=args.log_file, log_dir=args.log_dir)

    overrides = {
        "account": args.account,
        "targets": args.targets,
        "master_root": args.master_dir,
        "scratch_root": args.tmp_dir,
        "working_copy": args.working_copy,
        "namespace": args.namespace,
        "lock_file": args.lock_file,
        "show_progress": False if args.no_progress else None,
    }

    try:
        config = load_config(
            env_file=args.env_file,
            config_file=args.config_file,
            overrides=overrides,
            require_account=not (args.list or args.verify is not None),
        )
    except ConfigError as e:
        logger.error(f"[CONFIG] {e}")
        return EXIT_CONFIG

    if args.validate_config:
        return validate_configuration(config)

    try:
        require_dependencies()
    except DependencyError as e:
        logger.error(f"[ERROR] {e}")
        return EXIT_DEPENDENCY

    if args.list:
        return list_backups(config)
    if args.verify is not None:
        return verify_backup_integrity(args.verify or config.master_root, config.namespace)

    orchestrator = BackupOrchestrator(config)
    try:
        stats = orchestrator.run()
    except LockError as e:
        logger.error(f"[LOCK] {e}")
        return EXIT_LOCKED
    except ListError as e:
        logger.error(f"[LIST] {e}")
        return EXIT_LISTING
    except KeyboardInterrupt:
        logger.warning("[STOP] Aborted")
        return EXIT_INTERRUPTED

    if stats.outcome is RunOutcome.NOTHING_TO_DO:
        return EXIT_NO_REPOSITORIES
    if stats.outcome is RunOutcome.INTERRUPTED:
        return EXIT_INTERRUPTED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
