"""
Error taxonomy for the backup run

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

Fatal errors (ConfigError, DependencyError, ListError, LockError) abort the
run. MirrorError, DetectError and ReplicationError are recovered per
repository or per target and only end up in the run statistics.
"""

from typing import Any, Dict, Optional


class BackupError(Exception):
    """Base exception for all backup errors"""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        parts = [self.message]
        if self.context:
            parts.append(", ".join(f"{k}={v}" for k, v in self.context.items()))
        if self.cause:
            parts.append(f"caused by: {self.cause}")
        return " | ".join(parts)


class ConfigError(BackupError):
    """Missing or invalid configuration"""


class DependencyError(ConfigError):
    """A required external tool is not installed"""

    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(
            f"Missing dependencies: {' '.join(self.missing)}",
            context={"install": f"sudo apt install {' '.join(self.missing)}"},
        )


class ListError(BackupError):
    """Repository listing failed (transport, auth or non-2xx response)"""


class MirrorError(BackupError):
    """Creating or updating a mirror in the master store failed"""

    def __init__(self, name: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, context={"repository": name}, cause=cause)
        self.name = name


class CloneFailed(MirrorError):
    pass


class FetchFailed(MirrorError):
    pass


class DetectError(BackupError):
    """Reference fingerprint could not be computed"""


class ReplicationError(BackupError):
    """Syncing a tree to one target failed"""

    def __init__(
        self,
        target: str,
        message: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, context={"target": target}, cause=cause)
        self.target = target


class LockError(BackupError):
    """Another live run holds the run lock"""

    def __init__(self, lock_file: str, holder_pid: Optional[int] = None):
        message = "Another backup run is already running"
        if holder_pid is not None:
            message += f" (pid {holder_pid})"
        super().__init__(message, context={"lock_file": lock_file})
        self.lock_file = lock_file
        self.holder_pid = holder_pid
