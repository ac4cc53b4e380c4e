"""
Shared fixtures: throwaway local git repositories

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

import subprocess
import tempfile
from pathlib import Path

import pytest


def git(*args, cwd):
    return subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, check=True, text=True
    )


def commit_file(repo_path: Path, filename: str, content: str, message: str):
    (repo_path / filename).write_text(content)
    git("add", filename, cwd=repo_path)
    git("commit", "-m", message, cwd=repo_path)


@pytest.fixture
def local_git_repo():
    """Create a local git repository with one commit"""
    with tempfile.TemporaryDirectory() as tmpdir:
        repo_path = Path(tmpdir) / "test-repo"
        repo_path.mkdir()

        git("init", cwd=repo_path)
        git("config", "user.email", "test@test.com", cwd=repo_path)
        git("config", "user.name", "Test User", cwd=repo_path)
        commit_file(repo_path, "README.md", "# Test Repository\n", "Initial commit")

        yield repo_path


@pytest.fixture
def workspace():
    """Temporary directory for master store, scratch and targets"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
