"""
git-backup-sync - Incremental GitHub backup to removable drives

Keeps a persistent master store of bare mirrors for every repository of a
GitHub account and replicates only the repositories that changed to one or
more mounted backup drives.

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

__version__ = "1.0.0"
__license__ = "Apache-2.0"
__description__ = "Incremental GitHub repository backup to removable drives"

from .base import RepositoryLister, RepositoryRef, RunOutcome, RunStats, UpdateOutcome
from .change_detector import ChangeDetector, Fingerprint, classify, compute_fingerprint
from .config import BackupConfig, load_config
from .github_manager import GitHubLister
from .main import BackupOrchestrator, main
from .mirror_store import MirrorStore
from .replicator import ReplicationCoordinator, ReplicationReport, ReplicationTarget
from .run_lock import RunLock

__all__ = [
    "RepositoryRef",
    "RepositoryLister",
    "UpdateOutcome",
    "RunOutcome",
    "RunStats",
    "GitHubLister",
    "MirrorStore",
    "ChangeDetector",
    "Fingerprint",
    "classify",
    "compute_fingerprint",
    "ReplicationCoordinator",
    "ReplicationReport",
    "ReplicationTarget",
    "RunLock",
    "BackupConfig",
    "load_config",
    "BackupOrchestrator",
    "main",
]
