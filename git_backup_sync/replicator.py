"""
Replication of mirrors and checkouts to removable targets

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

import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from loguru import logger

from .errors import ReplicationError
from .mirror_store import GIT_ENV, robust_rmtree, stderr_excerpt


@dataclass(frozen=True)
class ReplicationTarget:
    mount_path: str

    def is_available(self, require_mount: bool = False) -> bool:
        # Rechecked on every call: drives come and go between runs
        path = Path(self.mount_path)
        if not path.is_dir():
            return False
        if require_mount and not os.path.ismount(path):
            return False
        return True

    def mirrors_dir(self, namespace: str) -> Path:
        return Path(self.mount_path) / namespace / "mirrors"

    def checkouts_dir(self, namespace: str) -> Path:
        return Path(self.mount_path) / namespace / "checkouts"

    def __str__(self) -> str:
        return self.mount_path


@dataclass
class ReplicationReport:
    name: str
    succeeded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: Dict[str, ReplicationError] = field(default_factory=dict)

    @property
    def any_target_succeeded(self) -> bool:
        return bool(self.succeeded)


def sync_tree(
    source: Path,
    destination: Path,
    timeout: Optional[int] = None,
    exclude: Sequence[str] = (),
):
    """
    Make ``destination`` an exact copy of ``source``.

    Files at the destination that are absent from the source are deleted.

    Raises:
        ReplicationError: rsync could not be run or exited non-zero
    """
    target = str(destination)
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ReplicationError(target, "Could not create destination", cause=e) from e

    cmd = ["rsync", "-a", "--delete"]
    for pattern in exclude:
        cmd.append(f"--exclude={pattern}")
    cmd += [f"{source}/", f"{destination}/"]

    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ReplicationError(target, f"rsync timed out after {timeout}s", cause=e) from e
    except OSError as e:
        raise ReplicationError(target, "Could not run rsync", cause=e) from e

    if result.returncode != 0:
        raise ReplicationError(
            target,
            f"rsync exited with {result.returncode}: {stderr_excerpt(result.stderr)}",
        )


class ReplicationCoordinator:
    """
    Pushes one repository to every configured target, one target at a time.

    A target failing never stops the remaining targets. Working trees are
    checked out lazily into the scratch root, once per repository, and shared
    by all targets.
    """

    def __init__(
        self,
        scratch_root: str,
        namespace: str,
        require_mount: bool = False,
        sync_timeout: Optional[int] = None,
    ):
        self.scratch_root = Path(scratch_root)
        self.namespace = namespace
        self.require_mount = require_mount
        self.sync_timeout = sync_timeout
        self.logger = logger.bind(component=self.__class__.__name__)
        self._working_trees: Dict[str, Path] = {}
        self._checkout_errors: Dict[str, ReplicationError] = {}

    def replicate(
        self,
        name: str,
        mirror_path: Path,
        targets: Sequence[ReplicationTarget],
        want_working_tree: bool = False,
    ) -> ReplicationReport:
        report = ReplicationReport(name=name)

        for target in targets:
            if not target.is_available(self.require_mount):
                self.logger.warning(f"[SKIP] Target not mounted: {target}")
                report.skipped.append(target.mount_path)
                report.errors[target.mount_path] = ReplicationError(
                    target.mount_path, "Target not mounted"
                )
                continue

            try:
                self._replicate_to(name, mirror_path, target, want_working_tree)
            except ReplicationError as e:
                self.logger.error(f"[SYNC] {name} -> {target} failed: {e}")
                report.errors[target.mount_path] = e
                continue

            report.succeeded.append(target.mount_path)

        return report

    def _replicate_to(
        self,
        name: str,
        mirror_path: Path,
        target: ReplicationTarget,
        want_working_tree: bool,
    ):
        destination = target.mirrors_dir(self.namespace) / f"{name}.git"
        self.logger.info(f"[SYNC] {name} -> {destination}")
        sync_tree(mirror_path, destination, timeout=self.sync_timeout)

        if want_working_tree:
            working_tree = self.working_tree(name, mirror_path)
            checkout_destination = target.checkouts_dir(self.namespace) / name
            self.logger.info(f"[SYNC] {name} checkout -> {checkout_destination}")
            sync_tree(
                working_tree,
                checkout_destination,
                timeout=self.sync_timeout,
                exclude=(".git",),
            )

    def working_tree(self, name: str, mirror_path: Path) -> Path:
        """Check out ``mirror_path`` into scratch space, once per repository"""
        if name in self._working_trees:
            return self._working_trees[name]
        if name in self._checkout_errors:
            raise self._checkout_errors[name]

        path = self.scratch_root / name
        robust_rmtree(path)
        self.scratch_root.mkdir(parents=True, exist_ok=True)

        self.logger.debug(f"[CHECKOUT] Checking out {name} into {path}")
        try:
            result = subprocess.run(
                ["git", "clone", "--quiet", str(mirror_path), str(path)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
                env=GIT_ENV,
            )
        except OSError as e:
            error = ReplicationError(str(path), "Could not run git clone", cause=e)
        else:
            if result.returncode == 0:
                self._working_trees[name] = path
                return path
            error = ReplicationError(
                str(path), f"Checkout failed: {stderr_excerpt(result.stderr)}"
            )

        robust_rmtree(path)
        self._checkout_errors[name] = error
        raise error

    def cleanup_working_tree(self, name: str):
        self._working_trees.pop(name, None)
        self._checkout_errors.pop(name, None)
        path = self.scratch_root / name
        if path.exists():
            robust_rmtree(path)
            self.logger.debug(f"[CLEANUP] Removed working tree: {path}")
