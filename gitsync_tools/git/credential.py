"""
Git credential helper integration and the default password provider.

``askpass`` is what the public operations use when no ``password`` argument
is given: environment variables first, then whatever credential helper git is
configured with, then a terminal prompt when running interactively.
"""

from __future__ import annotations

from typing import Callable, Optional

from gitsync_core.askpass import (
    ChainProvider,
    EnvProvider,
    InteractiveProvider,
    PasswordProvider,
    PromptContext,
)
from gitsync_core.config import GitSyncConfig, get_config
from logging_config import get_logger

from ._runner import run_git

logger = get_logger("auth")

# Never let the helper fall back to its own terminal prompt
_NO_PROMPT_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_ASKPASS": "", "SSH_ASKPASS": ""}


def _describe(
    context: PromptContext,
    username: Optional[str] = None,
    password: Optional[str] = None,
) -> str:
    """Build the key=value block the credential protocol reads on stdin."""
    lines = [f"protocol={context.scheme}", f"host={context.host}"]
    if username:
        lines.append(f"username={username}")
    if password:
        lines.append(f"password={password}")
    return "\n".join(lines) + "\n\n"


def _parse(output: str) -> dict[str, str]:
    values = {}
    for line in output.splitlines():
        if "=" in line:
            key, value = line.split("=", 1)
            values[key] = value
    return values


class CredentialHelperProvider(PasswordProvider):
    """
    Answers username and password prompts for HTTP(S) hosts through
    ``git credential fill``, and reports outcomes back with
    ``git credential approve`` / ``git credential reject``.
    """

    def __init__(self, runner: Callable[..., tuple[bool, str, str]] = run_git):
        self.runner = runner
        self._filled: dict[tuple[str, Optional[str]], dict[str, str]] = {}

    def _fill(self, context: PromptContext) -> Optional[dict[str, str]]:
        if context.scheme not in ("http", "https"):
            return None
        key = (context.host, context.username)
        if key not in self._filled:
            success, stdout, _ = self.runner(
                "credential", "fill",
                input_text=_describe(context, context.username),
                env_overrides=_NO_PROMPT_ENV,
                mask=False,
            )
            if not success:
                logger.debug(f"No stored credentials for {context.host}")
                return None
            self._filled[key] = _parse(stdout)
        return self._filled[key]

    def ask(self, prompt: str, context: PromptContext) -> Optional[str]:
        if context.field not in ("username", "password"):
            return None
        values = self._fill(context)
        if not values:
            return None
        return values.get(context.field) or None

    def approve(self, context: PromptContext, username: str, secret: str) -> None:
        if context.scheme in ("http", "https"):
            self.runner(
                "credential", "approve",
                input_text=_describe(context, username, secret),
                env_overrides=_NO_PROMPT_ENV,
            )

    def reject(self, context: PromptContext, username: str, secret: str) -> None:
        if context.scheme not in ("http", "https"):
            return
        self._filled.pop((context.host, context.username), None)
        self._filled.pop((context.host, username), None)
        self.runner(
            "credential", "reject",
            input_text=_describe(context, username, secret),
            env_overrides=_NO_PROMPT_ENV,
        )


def default_provider(config: Optional[GitSyncConfig] = None) -> ChainProvider:
    """Environment, then credential helper, then terminal prompt."""
    config = config or get_config()
    providers: list[PasswordProvider] = [EnvProvider(config)]
    if config.use_credential_helper:
        providers.append(CredentialHelperProvider())
    if config.interactive:
        providers.append(InteractiveProvider())
    return ChainProvider(providers)


class DefaultAskpass(PasswordProvider):
    """The default ``password`` argument; builds its provider chain on first use."""

    def __init__(self) -> None:
        self._chain: Optional[ChainProvider] = None

    def _provider(self) -> ChainProvider:
        if self._chain is None:
            self._chain = default_provider()
        return self._chain

    def reset(self) -> None:
        self._chain = None

    @property
    def interactive(self) -> bool:  # type: ignore[override]
        return self._provider().interactive

    def ask(self, prompt: str, context: PromptContext) -> Optional[str]:
        return self._provider().ask(prompt, context)

    def approve(self, context: PromptContext, username: str, secret: str) -> None:
        self._provider().approve(context, username, secret)

    def reject(self, context: PromptContext, username: str, secret: str) -> None:
        self._provider().reject(context, username, secret)


askpass = DefaultAskpass()
