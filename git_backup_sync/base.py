"""
Base types shared by the backup components

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

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from loguru import logger


@dataclass(frozen=True)
class RepositoryRef:
    name: str
    clone_url: str

    @classmethod
    def from_clone_url(cls, clone_url: str) -> "RepositoryRef":
        """Derive the repository name from the clone URL basename"""
        basename = clone_url.rstrip("/").rsplit("/", 1)[-1]
        if basename.endswith(".git"):
            basename = basename[: -len(".git")]
        return cls(name=basename, clone_url=clone_url)

    @property
    def has_safe_name(self) -> bool:
        # Names become directory names in the master store and on targets
        return bool(self.name) and self.name not in (".", "..") and not any(
            sep in self.name for sep in ("/", "\\", "\0")
        )


class UpdateOutcome(Enum):
    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    FAILED = "failed"

    @property
    def needs_replication(self) -> bool:
        return self is not UpdateOutcome.UNCHANGED


class RunOutcome(Enum):
    COMPLETED = "completed"
    NOTHING_TO_DO = "nothing_to_do"
    INTERRUPTED = "interrupted"


@dataclass
class RunStats:
    master_root: str
    targets: List[str]
    total: int = 0
    replicated: int = 0
    skipped_unchanged: int = 0
    failed: int = 0
    failed_repositories: List[str] = field(default_factory=list)
    outcome: Optional[RunOutcome] = None

    def record_failure(self, name: str):
        self.failed += 1
        self.failed_repositories.append(name)

    @property
    def processed(self) -> int:
        return self.replicated + self.skipped_unchanged + self.failed


class RepositoryLister(ABC):
    def __init__(self, account: str, token: Optional[str] = None):
        self.account = account
        self.token = token
        self.logger = logger.bind(component=self.__class__.__name__)

    @abstractmethod
    def list_repositories(self) -> List[RepositoryRef]:
        pass

    def unique_repositories(self, refs: List[RepositoryRef]) -> List[RepositoryRef]:
        """Drop unusable names and later duplicates, keeping API order"""
        seen = set()
        unique = []
        for ref in refs:
            if not ref.has_safe_name:
                self.logger.warning(
                    f"[SKIP] Ignoring repository with unusable name: {ref.clone_url}"
                )
                continue
            if ref.name in seen:
                self.logger.warning(
                    f"[SKIP] Duplicate repository name {ref.name}: {ref.clone_url}"
                )
                continue
            seen.add(ref.name)
            unique.append(ref)
        return unique
