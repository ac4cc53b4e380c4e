"""
Master store of bare repository mirrors

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
import shutil
import subprocess
import time
from pathlib import Path
from typing import List, Optional

from loguru import logger

from .base import RepositoryRef
from .errors import CloneFailed, FetchFailed

# Never let git wait on an interactive credential prompt. Children run in
# their own session so a terminal Ctrl-C only reaches the stop handler.
GIT_ENV = dict(os.environ, GIT_TERMINAL_PROMPT="0")


def robust_rmtree(path: Path, max_retries: int = 3) -> bool:
    """
    Remove a directory tree, retrying while files are still being released.

    Returns:
        True if the path is gone, False otherwise
    """
    if not path.exists():
        return True

    for attempt in range(max_retries):
        try:
            shutil.rmtree(path)
            return True
        except OSError as e:
            if attempt < max_retries - 1:
                time.sleep(0.5 * (attempt + 1))
                logger.debug(
                    f"[CLEANUP] Retry {attempt + 1}/{max_retries} removing {path}: {e}"
                )
            else:
                logger.warning(
                    f"[CLEANUP] Failed to remove {path} after {max_retries} attempts: {e}"
                )
    return False


def stderr_excerpt(stderr: Optional[str]) -> str:
    return stderr.strip()[:500] if stderr else ""


class MirrorStore:
    """
    Owns ``<master_root>/<name>.git`` bare mirrors.

    Mirrors are created on first encounter and fetched in place on every
    later run. Nothing in here ever deletes a valid mirror.
    """

    PENDING_DIR = ".pending"
    STAGING_SUFFIX = ".partial"

    def __init__(self, master_root: str, network_timeout: Optional[int] = None):
        self.master_root = Path(master_root)
        self.network_timeout = network_timeout
        self.logger = logger.bind(component=self.__class__.__name__)

    def mirror_path(self, name: str) -> Path:
        return self.master_root / f"{name}.git"

    def has_mirror(self, name: str) -> bool:
        path = self.mirror_path(name)
        return path.is_dir() and (path / "HEAD").is_file()

    def ensure_mirror(self, ref: RepositoryRef) -> bool:
        """
        Clone or update the mirror for ``ref``.

        Returns:
            True if a valid mirror existed before the call

        Raises:
            CloneFailed: first clone failed; nothing is left at the mirror path
            FetchFailed: update failed; the existing mirror is untouched
        """
        path = self.mirror_path(ref.name)
        if self.has_mirror(ref.name):
            self._fetch(ref, path)
            return True

        self._clone(ref, path)
        return False

    def _clone(self, ref: RepositoryRef, path: Path):
        if path.exists():
            self.logger.warning(
                f"[CLONE] Replacing invalid mirror directory for {ref.name}: {path}"
            )
            robust_rmtree(path)

        staging = path.with_name(path.name + self.STAGING_SUFFIX)
        robust_rmtree(staging)
        self.master_root.mkdir(parents=True, exist_ok=True)

        self.logger.info(f"[CLONE] Cloning: {ref.name}")
        try:
            result = subprocess.run(
                ["git", "clone", "--mirror", "--quiet", ref.clone_url, str(staging)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
                env=GIT_ENV,
                timeout=self.network_timeout,
            )
        except subprocess.TimeoutExpired as e:
            robust_rmtree(staging)
            raise CloneFailed(
                ref.name, f"Clone timed out after {self.network_timeout}s", cause=e
            ) from e
        except OSError as e:
            robust_rmtree(staging)
            raise CloneFailed(ref.name, "Could not run git clone", cause=e) from e

        if result.returncode != 0:
            robust_rmtree(staging)
            raise CloneFailed(
                ref.name, f"Clone failed: {stderr_excerpt(result.stderr)}"
            )

        try:
            staging.rename(path)
        except OSError as e:
            robust_rmtree(staging)
            raise CloneFailed(
                ref.name, "Could not move clone into the master store", cause=e
            ) from e

    def _fetch(self, ref: RepositoryRef, path: Path):
        self.logger.info(f"[FETCH] Updating: {ref.name}")
        try:
            result = subprocess.run(
                ["git", "--git-dir", str(path), "remote", "update", "--prune"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
                env=GIT_ENV,
                timeout=self.network_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise FetchFailed(
                ref.name, f"Fetch timed out after {self.network_timeout}s", cause=e
            ) from e
        except OSError as e:
            raise FetchFailed(ref.name, "Could not run git fetch", cause=e) from e

        if result.returncode != 0:
            raise FetchFailed(
                ref.name, f"Fetch failed: {stderr_excerpt(result.stderr)}"
            )

    def list_mirrors(self) -> List[Path]:
        return sorted(
            p
            for p in self.master_root.glob("*.git")
            if p.is_dir() and (p / "HEAD").is_file()
        )

    # Pending markers record a mirror that changed but has not reached any
    # target yet. They live outside the mirror directories so they are never
    # replicated.

    def _pending_marker(self, name: str) -> Path:
        return self.master_root / self.PENDING_DIR / name

    def mark_pending(self, name: str):
        marker = self._pending_marker(name)
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch()

    def clear_pending(self, name: str):
        try:
            self._pending_marker(name).unlink()
        except FileNotFoundError:
            pass

    def is_pending(self, name: str) -> bool:
        return self._pending_marker(name).exists()
