"""
Run configuration: loading, validation and dependency checks

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
import shutil
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv
from loguru import logger

from .errors import ConfigError, DependencyError
from .github_manager import DEFAULT_API_URL
from .replicator import ReplicationTarget
from .token_discovery import get_github_token

REQUIRED_TOOLS = ("git", "rsync")
DEFAULT_NAMESPACE = "github-backup"
DEFAULT_ENV_FILES = ("config.env", ".env")

# Config field -> environment variable
ENV_VARS = {
    "account": "GITHUB_USER",
    "targets": "BACKUP_TARGETS",
    "master_root": "MASTER_DIR",
    "scratch_root": "TMP_DIR",
    "working_copy": "WORKING_COPY",
    "namespace": "BACKUP_NAMESPACE",
    "lock_file": "LOCK_FILE",
    "api_url": "GITHUB_API_URL",
    "api_timeout": "API_TIMEOUT",
    "network_timeout": "NETWORK_TIMEOUT",
    "sync_timeout": "SYNC_TIMEOUT",
    "require_mount": "REQUIRE_MOUNT",
}


def default_master_root() -> str:
    return str(Path.home() / "git-backup" / "mirrors")


def default_scratch_root() -> str:
    return os.path.join(tempfile.gettempdir(), "git-backup")


def default_lock_file() -> str:
    return os.path.join(tempfile.gettempdir(), "git-backup-sync.lock")


@dataclass(frozen=True)
class BackupConfig:
    account: str
    token: Optional[str] = None
    targets: Tuple[str, ...] = ()
    master_root: str = field(default_factory=default_master_root)
    scratch_root: str = field(default_factory=default_scratch_root)
    working_copy: bool = False
    namespace: str = DEFAULT_NAMESPACE
    lock_file: str = field(default_factory=default_lock_file)
    api_url: str = DEFAULT_API_URL
    api_timeout: int = 30
    network_timeout: Optional[int] = 1800
    sync_timeout: Optional[int] = None
    require_mount: bool = False
    show_progress: bool = True

    @property
    def replication_targets(self) -> List[ReplicationTarget]:
        return [ReplicationTarget(mount_path=t) for t in self.targets]

    def validate(self, require_account: bool = True) -> List[str]:
        """
        Check the configuration for fatal problems.

        The account is only needed to list repositories, so diagnostics on
        existing mirrors pass ``require_account=False``.

        Returns:
            Warnings that do not prevent a run

        Raises:
            ConfigError: listing every issue found
        """
        issues = []
        warnings = []

        if require_account and not (self.account and self.account.strip()):
            issues.append("GITHUB_USER not set")

        if self.api_timeout <= 0:
            issues.append("API_TIMEOUT must be positive")
        for name in ("network_timeout", "sync_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                issues.append(f"{ENV_VARS[name]} must be positive")

        if (
            not self.namespace
            or self.namespace in (".", "..")
            or "/" in self.namespace
            or "\\" in self.namespace
        ):
            issues.append(f"Invalid BACKUP_NAMESPACE: {self.namespace!r}")

        master = Path(self.master_root).expanduser().resolve()
        scratch = Path(self.scratch_root).expanduser().resolve()
        if master == scratch or scratch in master.parents:
            # The scratch root is wiped at the end of every run
            issues.append(
                f"MASTER_DIR ({master}) must not be inside TMP_DIR ({scratch})"
            )

        if not self.targets:
            warnings.append(
                "No BACKUP_TARGETS configured; only the master store will be updated"
            )

        if issues:
            raise ConfigError(
                "Invalid configuration: " + "; ".join(issues),
                context={"issues": len(issues)},
            )
        return warnings


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_timeout(name: str, value: Any) -> Optional[int]:
    # Empty, "none" and 0 disable the timeout
    if value is None or str(value).strip().lower() in ("", "none"):
        return None
    try:
        seconds = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number of seconds, got {value!r}") from e
    return seconds or None


def parse_targets(value: Any) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value if str(v).strip())
    return tuple(str(value).split())


def _convert(name: str, value: Any) -> Any:
    if name == "targets":
        return parse_targets(value)
    if name in ("working_copy", "require_mount", "show_progress"):
        return parse_bool(value)
    if name in ("network_timeout", "sync_timeout"):
        return parse_timeout(name, value)
    if name == "api_timeout":
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"api_timeout must be an integer, got {value!r}") from e
    return str(value)


def load_env_files(env_file: Optional[str] = None):
    """Load dotenv files without overriding variables already set"""
    if env_file:
        if not Path(env_file).is_file():
            raise ConfigError(f"Environment file not found: {env_file}")
        load_dotenv(env_file, override=False)
        logger.debug(f"[CONFIG] Loaded {env_file}")
        return

    for candidate in DEFAULT_ENV_FILES:
        if Path(candidate).is_file():
            load_dotenv(candidate, override=False)
            logger.debug(f"[CONFIG] Loaded {candidate}")


def load_yaml_config(config_file: str) -> Dict[str, Any]:
    try:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {config_file}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_file}", cause=e) from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_file} must contain a mapping")

    known = {f.name for f in fields(BackupConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in {config_file}: {', '.join(unknown)}")
    return data


def load_config(
    env_file: Optional[str] = None,
    config_file: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    discover_token: bool = True,
    require_account: bool = True,
) -> BackupConfig:
    """
    Build the run configuration.

    Precedence, lowest first: defaults, YAML file, environment (after the
    dotenv files are loaded), ``overrides`` (CLI flags). ``None`` overrides
    are ignored.
    """
    load_env_files(env_file)

    raw: Dict[str, Any] = {}
    if config_file:
        raw.update(load_yaml_config(config_file))

    for name, var in ENV_VARS.items():
        value = os.getenv(var)
        if value is not None and value.strip() != "":
            raw[name] = value

    for name, value in (overrides or {}).items():
        if value is not None:
            raw[name] = value

    values = {name: _convert(name, value) for name, value in raw.items()}
    values.setdefault("account", "")

    if not values.get("token"):
        values["token"] = get_github_token(use_gh_cli=discover_token)

    for name in ("master_root", "scratch_root", "lock_file"):
        if name in values:
            values[name] = str(Path(values[name]).expanduser())

    config = BackupConfig(**values)
    for warning in config.validate(require_account=require_account):
        logger.warning(f"[CONFIG] {warning}")
    return config


def check_dependencies(tools=REQUIRED_TOOLS) -> List[str]:
    """Return the required external tools that are not on PATH"""
    return [tool for tool in tools if shutil.which(tool) is None]


def require_dependencies(tools=REQUIRED_TOOLS):
    missing = check_dependencies(tools)
    if missing:
        raise DependencyError(missing)
