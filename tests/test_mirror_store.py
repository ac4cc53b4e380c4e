"""
Tests for mirror_store module

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
from pathlib import Path
from unittest.mock import patch

import pytest

from git_backup_sync.base import RepositoryRef
from git_backup_sync.errors import CloneFailed, FetchFailed
from git_backup_sync.mirror_store import MirrorStore, robust_rmtree

from .conftest import commit_file, git


def ref_for(repo_path: Path) -> RepositoryRef:
    return RepositoryRef(name=repo_path.name, clone_url=str(repo_path))


class TestMirrorStorePaths:
    """Tests for deterministic layout"""

    def test_mirror_path(self, workspace):
        store = MirrorStore(str(workspace / "master"))
        assert store.mirror_path("repo") == workspace / "master" / "repo.git"

    def test_constructor_does_not_touch_disk(self, workspace):
        MirrorStore(str(workspace / "master"))
        assert not (workspace / "master").exists()

    def test_has_mirror_requires_head(self, workspace):
        """Test a bare directory without HEAD is not a mirror"""
        store = MirrorStore(str(workspace))
        (workspace / "junk.git").mkdir()
        assert store.has_mirror("junk") is False


class TestEnsureMirror:
    """Clone and fetch against real local repositories"""

    def test_first_clone(self, local_git_repo, workspace):
        store = MirrorStore(str(workspace / "master"))

        existed = store.ensure_mirror(ref_for(local_git_repo))

        assert existed is False
        assert store.has_mirror("test-repo")
        bare = git(
            "--git-dir",
            str(store.mirror_path("test-repo")),
            "rev-parse",
            "--is-bare-repository",
            cwd=workspace,
        )
        assert bare.stdout.strip() == "true"

    def test_second_call_fetches(self, local_git_repo, workspace):
        store = MirrorStore(str(workspace / "master"))
        store.ensure_mirror(ref_for(local_git_repo))

        commit_file(local_git_repo, "NEW.md", "new\n", "Second commit")
        existed = store.ensure_mirror(ref_for(local_git_repo))

        assert existed is True
        log = git(
            "--git-dir",
            str(store.mirror_path("test-repo")),
            "log",
            "--all",
            "--format=%s",
            cwd=workspace,
        )
        assert "Second commit" in log.stdout

    def test_fetch_prunes_deleted_branches(self, local_git_repo, workspace):
        store = MirrorStore(str(workspace / "master"))
        git("branch", "feature", cwd=local_git_repo)
        store.ensure_mirror(ref_for(local_git_repo))

        git("branch", "-D", "feature", cwd=local_git_repo)
        store.ensure_mirror(ref_for(local_git_repo))

        refs = git(
            "--git-dir",
            str(store.mirror_path("test-repo")),
            "for-each-ref",
            "--format=%(refname)",
            cwd=workspace,
        )
        assert "refs/heads/feature" not in refs.stdout

    def test_failed_clone_leaves_nothing(self, workspace):
        """Test a failed clone is never mistaken for a mirror"""
        store = MirrorStore(str(workspace / "master"))
        ref = RepositoryRef(name="ghost", clone_url=str(workspace / "does-not-exist"))

        with pytest.raises(CloneFailed) as exc_info:
            store.ensure_mirror(ref)

        assert exc_info.value.name == "ghost"
        assert not store.mirror_path("ghost").exists()
        assert not (workspace / "master" / "ghost.git.partial").exists()
        assert store.has_mirror("ghost") is False

    def test_invalid_mirror_directory_is_replaced(self, local_git_repo, workspace):
        store = MirrorStore(str(workspace / "master"))
        leftover = store.mirror_path("test-repo")
        leftover.mkdir(parents=True)
        (leftover / "garbage").write_text("half written")

        existed = store.ensure_mirror(ref_for(local_git_repo))

        assert existed is False
        assert store.has_mirror("test-repo")
        assert not (leftover / "garbage").exists()

    def test_failed_fetch_keeps_mirror(self, local_git_repo, workspace):
        """Test an unreachable remote leaves the existing mirror untouched"""
        store = MirrorStore(str(workspace / "master"))
        store.ensure_mirror(ref_for(local_git_repo))
        mirror = store.mirror_path("test-repo")
        git(
            "--git-dir",
            str(mirror),
            "remote",
            "set-url",
            "origin",
            str(workspace / "gone"),
            cwd=workspace,
        )

        with pytest.raises(FetchFailed):
            store.ensure_mirror(ref_for(local_git_repo))

        assert store.has_mirror("test-repo")

    def test_fetch_timeout_is_fetch_failed(self, local_git_repo, workspace):
        store = MirrorStore(str(workspace / "master"), network_timeout=5)
        store.ensure_mirror(ref_for(local_git_repo))

        with patch(
            "git_backup_sync.mirror_store.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="git", timeout=5),
        ):
            with pytest.raises(FetchFailed) as exc_info:
                store.ensure_mirror(ref_for(local_git_repo))

        assert "timed out" in str(exc_info.value)

    def test_clone_timeout_cleans_staging(self, workspace):
        store = MirrorStore(str(workspace / "master"), network_timeout=5)
        ref = RepositoryRef(name="slow", clone_url="https://example.invalid/slow.git")

        with patch(
            "git_backup_sync.mirror_store.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="git", timeout=5),
        ):
            with pytest.raises(CloneFailed):
                store.ensure_mirror(ref)

        assert not store.mirror_path("slow").exists()

    def test_git_runs_in_own_session(self, local_git_repo, workspace):
        """Test a terminal Ctrl-C cannot kill an in-flight clone or fetch"""
        store = MirrorStore(str(workspace / "master"))

        with patch(
            "git_backup_sync.mirror_store.subprocess.run", wraps=subprocess.run
        ) as run:
            store.ensure_mirror(ref_for(local_git_repo))
            store.ensure_mirror(ref_for(local_git_repo))

        assert run.call_count == 2
        for call in run.call_args_list:
            assert call.kwargs["start_new_session"] is True


class TestListMirrors:
    def test_lists_only_valid_mirrors(self, local_git_repo, workspace):
        store = MirrorStore(str(workspace / "master"))
        store.ensure_mirror(ref_for(local_git_repo))
        (workspace / "master" / "junk.git").mkdir()
        store.mark_pending("test-repo")

        assert store.list_mirrors() == [store.mirror_path("test-repo")]

    def test_missing_master_root(self, workspace):
        assert MirrorStore(str(workspace / "nowhere")).list_mirrors() == []


class TestPendingMarkers:
    """Tests for pending-replication markers"""

    def test_mark_and_clear(self, workspace):
        store = MirrorStore(str(workspace / "master"))
        assert store.is_pending("repo") is False

        store.mark_pending("repo")
        assert store.is_pending("repo") is True

        store.clear_pending("repo")
        assert store.is_pending("repo") is False

    def test_clear_without_marker(self, workspace):
        MirrorStore(str(workspace)).clear_pending("never-marked")

    def test_markers_live_outside_mirrors(self, local_git_repo, workspace):
        store = MirrorStore(str(workspace / "master"))
        store.ensure_mirror(ref_for(local_git_repo))
        store.mark_pending("test-repo")

        mirror_files = [p.name for p in store.mirror_path("test-repo").rglob("*")]
        assert "test-repo" not in mirror_files


class TestRobustRmtree:
    def test_removes_tree(self, workspace):
        target = workspace / "tree"
        (target / "nested").mkdir(parents=True)
        (target / "nested" / "file").write_text("x")

        assert robust_rmtree(target) is True
        assert not target.exists()

    def test_missing_path(self, workspace):
        assert robust_rmtree(workspace / "missing") is True
