"""
Discovery of the optional GitHub API credential

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
import subprocess
from typing import Optional

from loguru import logger

TOKEN_ENV_VARS = ("GITHUB_TOKEN", "GH_TOKEN")

# Placeholder values shipped in config.env.example
PLACEHOLDER_PREFIXES = ("ghp_your", "your_token")


def is_placeholder(token: str) -> bool:
    return token.startswith(PLACEHOLDER_PREFIXES)


def get_github_token(use_gh_cli: bool = True) -> Optional[str]:
    """
    Discover a GitHub token.

    Priority:
    1. GITHUB_TOKEN environment variable
    2. GH_TOKEN environment variable
    3. gh CLI auth token (via `gh auth token`)

    Returns:
        The token, or None to run unauthenticated
    """
    for var in TOKEN_ENV_VARS:
        token = os.getenv(var, "").strip()
        if token and not is_placeholder(token):
            logger.debug(f"[TOKEN] GitHub token found in {var} env var")
            return token

    if not use_gh_cli:
        return None

    try:
        result = subprocess.run(
            ["gh", "auth", "token"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return None

    if result.returncode == 0 and result.stdout.strip():
        logger.info("[TOKEN] GitHub token discovered from gh CLI")
        return result.stdout.strip()
    return None
