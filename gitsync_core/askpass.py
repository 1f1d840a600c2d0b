"""Password and passphrase providers.

A provider answers ``ask(prompt, context)`` with a secret, or ``None`` to
refuse. Providers may be interactive (a terminal prompt) or not (environment,
a fixed string, a git credential helper). Plain callables and strings are
wrapped once by ``make_password_provider()`` so the negotiator only ever talks
to a ``PasswordProvider``.
"""

from __future__ import annotations

import getpass
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Literal

from logging_config import get_logger

from .config import GitSyncConfig, get_config

logger = get_logger("auth")

PromptField = Literal["username", "password", "passphrase"]


@dataclass(frozen=True)
class PromptContext:
    """What a prompt is asking for."""

    field: PromptField
    host: str
    url: str = ""
    scheme: str = ""
    username: str | None = None
    key_path: str | None = None


class PasswordProvider:
    """Base provider: refuses everything."""

    interactive = False

    def ask(self, prompt: str, context: PromptContext) -> str | None:
        return None

    def approve(self, context: PromptContext, username: str, secret: str) -> None:
        """Called when the remote accepted a username/password pair."""

    def reject(self, context: PromptContext, username: str, secret: str) -> None:
        """Called when the remote rejected a username/password pair."""

    def __call__(self, prompt: str, context: PromptContext) -> str | None:
        return self.ask(prompt, context)


class CallbackProvider(PasswordProvider):
    """Wraps a user function ``fn(prompt, context) -> str | None``."""

    def __init__(self, fn: Callable[[str, PromptContext], str | None]):
        self.fn = fn

    def ask(self, prompt: str, context: PromptContext) -> str | None:
        return self.fn(prompt, context)


class StaticProvider(PasswordProvider):
    """Answers every secret prompt with the same string."""

    def __init__(self, secret: str):
        self.secret = secret

    def ask(self, prompt: str, context: PromptContext) -> str | None:
        if context.field == "username":
            return None
        return self.secret


class EnvProvider(PasswordProvider):
    """Answers from GITSYNC_USERNAME, GITSYNC_PASSWORD and GITSYNC_SSH_PASSPHRASE."""

    def __init__(self, config: GitSyncConfig | None = None):
        self.config = config or get_config()

    def ask(self, prompt: str, context: PromptContext) -> str | None:
        value = {
            "username": self.config.git_username,
            "password": self.config.git_password,
            "passphrase": self.config.ssh_passphrase,
        }.get(context.field, "")
        return value or None


class InteractiveProvider(PasswordProvider):
    """Prompts on the terminal; secrets are read without echo."""

    interactive = True

    def ask(self, prompt: str, context: PromptContext) -> str | None:
        try:
            if context.field == "username":
                value = input(f"{prompt}: ")
            else:
                value = getpass.getpass(f"{prompt}: ")
        except EOFError:
            return None
        return value or None


class ChainProvider(PasswordProvider):
    """Asks each provider in turn; the first non-empty answer wins."""

    def __init__(self, providers: Sequence[PasswordProvider]):
        self.providers = list(providers)

    @property
    def interactive(self) -> bool:  # type: ignore[override]
        return any(p.interactive for p in self.providers)

    def ask(self, prompt: str, context: PromptContext) -> str | None:
        for provider in self.providers:
            value = provider.ask(prompt, context)
            if value:
                return value
        return None

    def approve(self, context: PromptContext, username: str, secret: str) -> None:
        for provider in self.providers:
            provider.approve(context, username, secret)

    def reject(self, context: PromptContext, username: str, secret: str) -> None:
        for provider in self.providers:
            provider.reject(context, username, secret)


def make_password_provider(
    password: str | PasswordProvider | Callable[[str, PromptContext], str | None] | None,
) -> PasswordProvider | None:
    """Resolve the ``password`` argument of the public operations.

    ``None`` means no provider: kinds that need a secret are skipped without
    prompting.
    """
    if password is None:
        return None
    if isinstance(password, PasswordProvider):
        return password
    if isinstance(password, str):
        return StaticProvider(password)
    if callable(password):
        return CallbackProvider(password)
    raise TypeError(
        f"password must be a string or a callable, not {type(password).__name__}"
    )
