"""Centralized configuration for gitsync.

Loads environment variables (and a .env file when present) and provides a
unified configuration interface for the credential and transport layers.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

from dotenv import load_dotenv


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _interactive_from_env() -> bool:
    value = os.getenv("GITSYNC_INTERACTIVE", "auto").strip().lower()
    if value == "auto":
        return sys.stdin is not None and sys.stdin.isatty()
    return value in ("1", "true", "yes", "on")


def _split_patterns(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class GitSyncConfig:
    """Configuration for remote synchronization and authentication."""

    # HTTPS credentials
    github_pat: str = ""
    token_username: str = "x-access-token"
    git_username: str = ""
    git_password: str = ""

    # SSH
    ssh_key_path: str = ""
    ssh_passphrase: str = ""
    ssh_dir: Path = field(default_factory=lambda: Path.home() / ".ssh")

    # Prompting
    use_credential_helper: bool = True
    interactive: bool = False

    # Transport behaviour
    mirror_exclude: list[str] = field(default_factory=lambda: [r"^refs/pull/"])
    default_remote: str = "origin"
    git_timeout: int = 120

    # Singleton instance
    _instance: ClassVar["GitSyncConfig | None"] = None

    @classmethod
    def get_instance(cls) -> "GitSyncConfig":
        """Get the singleton configuration instance."""
        if cls._instance is None:
            cls._instance = cls._load_from_env()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the cached instance so the next lookup re-reads the environment."""
        cls._instance = None

    @classmethod
    def _load_from_env(cls) -> "GitSyncConfig":
        """Load configuration from environment variables."""
        load_dotenv()

        ssh_dir = os.getenv("GITSYNC_SSH_DIR", "")
        return cls(
            # HTTPS credentials
            github_pat=os.getenv("GITHUB_PAT", "") or os.getenv("GITHUB_TOKEN", ""),
            token_username=os.getenv("GITSYNC_TOKEN_USERNAME", "x-access-token"),
            git_username=os.getenv("GITSYNC_USERNAME", ""),
            git_password=os.getenv("GITSYNC_PASSWORD", ""),
            # SSH
            ssh_key_path=os.getenv("GITSYNC_SSH_KEY", ""),
            ssh_passphrase=os.getenv("GITSYNC_SSH_PASSPHRASE", ""),
            ssh_dir=Path(ssh_dir).expanduser() if ssh_dir else Path.home() / ".ssh",
            # Prompting
            use_credential_helper=_env_flag("GITSYNC_CREDENTIAL_HELPER", "true"),
            interactive=_interactive_from_env(),
            # Transport behaviour
            mirror_exclude=_split_patterns(
                os.getenv("GITSYNC_MIRROR_EXCLUDE", r"^refs/pull/")
            ),
            default_remote=os.getenv("GITSYNC_DEFAULT_REMOTE", "origin"),
            git_timeout=int(os.getenv("GITSYNC_GIT_TIMEOUT", "120")),
        )


def get_config() -> GitSyncConfig:
    """Get the current configuration."""
    return GitSyncConfig.get_instance()
