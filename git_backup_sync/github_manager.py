"""
GitHub repository lister

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

from typing import List, Optional

import requests
from github import Auth, Github, GithubException

from .base import RepositoryLister, RepositoryRef
from .errors import ListError

DEFAULT_API_URL = "https://api.github.com"
PAGE_SIZE = 100


class GitHubLister(RepositoryLister):
    """
    Lists the repositories owned by one GitHub account.

    The token is optional: unauthenticated requests only see public
    repositories and share a much lower rate ceiling (60 requests/hour
    against 5000 for a token). The token is only sent to the API, never
    embedded in clone URLs.
    """

    def __init__(
        self,
        account: str,
        token: Optional[str] = None,
        api_url: str = DEFAULT_API_URL,
        timeout: int = 30,
    ):
        super().__init__(account, token)
        self.api_url = api_url.rstrip("/")
        client_kwargs = {
            "base_url": self.api_url,
            "timeout": timeout,
            "per_page": PAGE_SIZE,
        }
        if token:
            client_kwargs["auth"] = Auth.Token(token)
        self.client = Github(**client_kwargs)

    def list_repositories(self) -> List[RepositoryRef]:
        auth_mode = "authenticated" if self.token else "unauthenticated"
        self.logger.info(
            f"[LIST] Fetching repository list for {self.account} ({auth_mode})"
        )

        refs = []
        try:
            user = self.client.get_user(self.account)
            # PaginatedList follows the Link headers, so every page is fetched
            for repo in user.get_repos(type="owner"):
                refs.append(RepositoryRef.from_clone_url(repo.clone_url))
        except GithubException as e:
            if e.status == 401:
                message = "GitHub authentication failed: invalid or expired token"
            elif e.status == 404:
                message = f"GitHub account not found: {self.account}"
            elif e.status == 403:
                message = "GitHub API refused the request (rate limit exceeded?)"
            else:
                message = f"GitHub API returned status {e.status}"
            raise ListError(
                message, context={"account": self.account}, cause=e
            ) from e
        except requests.exceptions.RequestException as e:
            raise ListError(
                f"Could not reach {self.api_url}",
                context={"account": self.account},
                cause=e,
            ) from e

        remaining, limit = self.client.rate_limiting
        self.logger.debug(f"[LIST] API rate limit remaining: {remaining}/{limit}")

        unique = self.unique_repositories(refs)
        self.logger.info(f"[LIST] Found {len(unique)} repositories")
        for ref in unique:
            self.logger.debug(f"  - {ref.name} ({ref.clone_url})")
        return unique
