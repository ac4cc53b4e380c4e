"""
Tests for GitHubLister

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

from unittest.mock import MagicMock, patch

import pytest
import requests
from github import Auth, GithubException

from git_backup_sync.errors import ListError
from git_backup_sync.github_manager import PAGE_SIZE, GitHubLister


def api_repo(name, owner="octocat"):
    return MagicMock(clone_url=f"https://github.com/{owner}/{name}.git")


@pytest.fixture
def mock_github():
    with patch("git_backup_sync.github_manager.Github") as github_cls:
        client = github_cls.return_value
        client.rate_limiting = (59, 60)
        yield github_cls, client


class TestGitHubListerInit:
    """Tests for client construction"""

    def test_unauthenticated(self, mock_github):
        github_cls, _ = mock_github
        GitHubLister("octocat")

        kwargs = github_cls.call_args.kwargs
        assert "auth" not in kwargs
        assert kwargs["per_page"] == PAGE_SIZE
        assert kwargs["base_url"] == "https://api.github.com"

    def test_token_auth(self, mock_github):
        github_cls, _ = mock_github
        GitHubLister("octocat", token="ghp_abc", api_url="https://ghe.example.com/api/v3/", timeout=10)

        kwargs = github_cls.call_args.kwargs
        assert isinstance(kwargs["auth"], Auth.Token)
        assert kwargs["base_url"] == "https://ghe.example.com/api/v3"
        assert kwargs["timeout"] == 10


class TestListRepositories:
    """Tests for listing"""

    def test_lists_owned_repositories(self, mock_github):
        _, client = mock_github
        client.get_user.return_value.get_repos.return_value = [
            api_repo("alpha"),
            api_repo("beta"),
        ]

        refs = GitHubLister("octocat").list_repositories()

        client.get_user.assert_called_once_with("octocat")
        client.get_user.return_value.get_repos.assert_called_once_with(type="owner")
        assert [r.name for r in refs] == ["alpha", "beta"]
        assert refs[0].clone_url == "https://github.com/octocat/alpha.git"

    def test_token_not_in_clone_url(self, mock_github):
        _, client = mock_github
        client.get_user.return_value.get_repos.return_value = [api_repo("alpha")]

        refs = GitHubLister("octocat", token="ghp_secret").list_repositories()

        assert "ghp_secret" not in refs[0].clone_url

    def test_empty_account(self, mock_github):
        """Test an account without repositories is not an error"""
        _, client = mock_github
        client.get_user.return_value.get_repos.return_value = []

        assert GitHubLister("octocat").list_repositories() == []

    def test_duplicates_removed(self, mock_github):
        _, client = mock_github
        client.get_user.return_value.get_repos.return_value = [
            api_repo("alpha"),
            api_repo("alpha", owner="someone-else"),
        ]

        refs = GitHubLister("octocat").list_repositories()

        assert len(refs) == 1

    @pytest.mark.parametrize(
        "status,expected",
        [
            (401, "authentication failed"),
            (404, "not found"),
            (403, "rate limit"),
            (500, "status 500"),
        ],
    )
    def test_api_errors_raise_list_error(self, mock_github, status, expected):
        _, client = mock_github
        client.get_user.side_effect = GithubException(status, {"message": "nope"}, None)

        with pytest.raises(ListError) as exc_info:
            GitHubLister("octocat").list_repositories()

        assert expected in str(exc_info.value)
        assert exc_info.value.context["account"] == "octocat"

    def test_error_while_paginating(self, mock_github):
        """Test a failure on a later page is not silently truncated"""
        _, client = mock_github

        def pages():
            yield api_repo("alpha")
            raise GithubException(502, {"message": "bad gateway"}, None)

        client.get_user.return_value.get_repos.return_value = pages()

        with pytest.raises(ListError):
            GitHubLister("octocat").list_repositories()

    def test_transport_error(self, mock_github):
        _, client = mock_github
        client.get_user.side_effect = requests.exceptions.ConnectionError("offline")

        with pytest.raises(ListError) as exc_info:
            GitHubLister("octocat").list_repositories()

        assert "Could not reach" in str(exc_info.value)
        assert isinstance(exc_info.value.cause, requests.exceptions.ConnectionError)
