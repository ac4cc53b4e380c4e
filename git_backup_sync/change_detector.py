"""
Reference fingerprints and update classification

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

import hashlib
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple

from loguru import logger

from .base import UpdateOutcome
from .errors import DetectError
from .mirror_store import GIT_ENV, stderr_excerpt


@dataclass(frozen=True)
class Fingerprint:
    """
    Digest over every (ref, commit) pair of a mirror.

    An unknown fingerprint carries the reason it could not be computed and
    never matches anything, itself included.
    """

    digest: Optional[str]
    reason: Optional[str] = None

    @classmethod
    def unknown(cls, reason: str) -> "Fingerprint":
        return cls(digest=None, reason=reason)

    @property
    def known(self) -> bool:
        return self.digest is not None

    def matches(self, other: "Fingerprint") -> bool:
        return self.known and other.known and self.digest == other.digest

    def __str__(self) -> str:
        if self.known:
            return self.digest[:12]
        return f"unknown ({self.reason})"


def compute_fingerprint(ref_pairs: Iterable[Tuple[str, str]]) -> Fingerprint:
    """SHA-256 over the sorted ``"<commit> <ref>"`` lines"""
    lines = sorted(f"{commit} {ref}" for ref, commit in ref_pairs)
    digest = hashlib.sha256()
    for line in lines:
        digest.update(line.encode("utf-8"))
        digest.update(b"\n")
    return Fingerprint(digest=digest.hexdigest())


def classify(
    before: Optional[Fingerprint], after: Fingerprint, was_new: bool
) -> UpdateOutcome:
    """
    Classify an update from the fingerprints taken around it.

    ``before`` is None on first observation. Anything that cannot prove
    equality resolves towards a change.
    """
    if was_new:
        return UpdateOutcome.NEW
    if not after.known:
        return UpdateOutcome.FAILED
    if before is None or not before.known:
        return UpdateOutcome.CHANGED
    if before.matches(after):
        return UpdateOutcome.UNCHANGED
    return UpdateOutcome.CHANGED


class ChangeDetector:
    def __init__(self, timeout: Optional[int] = 120):
        self.timeout = timeout
        self.logger = logger.bind(component=self.__class__.__name__)

    def list_refs(self, mirror_path: Path):
        try:
            result = subprocess.run(
                [
                    "git",
                    "--git-dir",
                    str(mirror_path),
                    "for-each-ref",
                    "--format=%(objectname) %(refname)",
                ],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
                env=GIT_ENV,
                timeout=self.timeout,
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            raise DetectError(
                "Could not list references",
                context={"mirror": str(mirror_path)},
                cause=e,
            ) from e

        if result.returncode != 0:
            raise DetectError(
                f"git for-each-ref failed: {stderr_excerpt(result.stderr)}",
                context={"mirror": str(mirror_path)},
            )

        pairs = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            commit, _, ref = line.partition(" ")
            pairs.append((ref, commit))
        return pairs

    def fingerprint(self, mirror_path: Path) -> Fingerprint:
        return compute_fingerprint(self.list_refs(mirror_path))

    def observe(self, mirror_path: Path) -> Fingerprint:
        """Like fingerprint(), but failures become an unknown fingerprint"""
        try:
            return self.fingerprint(mirror_path)
        except DetectError as e:
            self.logger.warning(f"[DETECT] Fingerprint unavailable for {mirror_path}: {e}")
            return Fingerprint.unknown(str(e))
