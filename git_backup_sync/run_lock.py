"""
Single-instance run lock

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
import time
from pathlib import Path
from typing import Optional

from loguru import logger

from .errors import LockError

# An unreadable marker younger than this may still be being written
UNREADABLE_GRACE_SECONDS = 10


def process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


def read_pid(path: Path) -> Optional[int]:
    """PID stored in ``path``, or None when missing or unparseable"""
    try:
        content = path.read_text().strip()
    except FileNotFoundError:
        return None
    try:
        return int(content)
    except ValueError:
        return None


class RunLock:
    """
    PID marker file guarding a backup run.

    The marker is written to a private file first and hard-linked onto the
    lock path, so it never exists without its PID. A marker whose PID is no
    longer alive (or an old, unparseable one) is stale and is reclaimed. Use
    as a context manager so every exit path releases it.
    """

    def __init__(self, lock_file: str):
        self.lock_file = Path(lock_file)
        self.pid = os.getpid()
        self.acquired = False
        self.logger = logger.bind(component=self.__class__.__name__)

    def _private_path(self, suffix: str) -> Path:
        return self.lock_file.with_name(f"{self.lock_file.name}.{self.pid}.{suffix}")

    def read_holder(self) -> Optional[int]:
        try:
            return read_pid(self.lock_file)
        except OSError as e:
            raise LockError(str(self.lock_file)) from e

    def _try_create(self) -> bool:
        staging = self._private_path("tmp")
        staging.write_text(f"{self.pid}\n")
        try:
            os.link(staging, self.lock_file)
        except FileExistsError:
            return False
        finally:
            staging.unlink(missing_ok=True)
        return True

    def _marker_age(self) -> Optional[float]:
        try:
            return time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return None

    def _is_held(self, holder: Optional[int]) -> bool:
        if holder is not None:
            return process_alive(holder)
        age = self._marker_age()
        return age is not None and age < UNREADABLE_GRACE_SECONDS

    def _reclaim(self, stale_holder: Optional[int]):
        """Move a stale marker aside, giving it back if it was replaced meanwhile"""
        claimed = self._private_path("stale")
        try:
            os.rename(self.lock_file, claimed)
        except FileNotFoundError:
            return
        try:
            holder = read_pid(claimed)
            if holder != stale_holder and holder is not None and process_alive(holder):
                try:
                    os.link(claimed, self.lock_file)
                except FileExistsError:
                    pass
                raise LockError(str(self.lock_file), holder)
        finally:
            claimed.unlink(missing_ok=True)

    def acquire(self):
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

        # Second attempt only after discarding a stale marker
        for _ in range(2):
            if self._try_create():
                self.acquired = True
                self.logger.debug(f"[LOCK] Acquired {self.lock_file} (pid {self.pid})")
                return

            holder = self.read_holder()
            if self._is_held(holder):
                raise LockError(str(self.lock_file), holder)

            self.logger.warning(
                f"[LOCK] Removing stale lock {self.lock_file} (pid {holder})"
            )
            self._reclaim(holder)

        # Lost the race against another run reclaiming the same marker
        raise LockError(str(self.lock_file), self.read_holder())

    def release(self):
        if not self.acquired:
            return
        self.acquired = False
        if self.read_holder() != self.pid:
            self.logger.warning(f"[LOCK] {self.lock_file} no longer ours, leaving it")
            return
        try:
            self.lock_file.unlink()
            self.logger.debug(f"[LOCK] Released {self.lock_file}")
        except FileNotFoundError:
            pass

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
