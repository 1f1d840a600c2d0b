"""Credential negotiation state machine.

The transport calls ``offer()`` every time the remote challenges for
credentials. A call made while a previously offered candidate is still
outstanding means the remote rejected it. Each credential kind is offered at
most once per negotiation and is never offered again after a rejection, so a
negotiation ends after at most one offer per kind:

    INIT -> OFFERING -> ACCEPTED
                     -> EXHAUSTED

The negotiator never raises on exhaustion. It returns an ``Exhausted`` value
and the transport session decides how to fail.
"""

from __future__ import annotations

import os
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import ClassVar

from logging_config import get_logger

from .askpass import PasswordProvider, PromptContext
from .errors import AuthenticationExhausted
from .hosts import ResolvedHost
from .keys import IdentitySource, KeyLocator, SSHIdentity, SSHKey, SSHKeyFile, SSHKeyMaterial

logger = get_logger("auth")

DEFAULT_SSH_USERNAME = "git"


class CredentialKind(Enum):
    SSH_KEY = "ssh-key"
    SSH_AGENT = "ssh-agent"
    TOKEN = "token"
    USERPASS = "userpass"

    @property
    def is_ssh(self) -> bool:
        return self in (CredentialKind.SSH_KEY, CredentialKind.SSH_AGENT)


DEFAULT_PRIORITY: tuple[CredentialKind, ...] = (
    CredentialKind.SSH_KEY,
    CredentialKind.SSH_AGENT,
    CredentialKind.TOKEN,
    CredentialKind.USERPASS,
)


class NegotiationState(Enum):
    INIT = "init"
    OFFERING = "offering"
    ACCEPTED = "accepted"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class Candidate:
    """One concrete authentication attempt."""

    kind: CredentialKind
    username: str | None = None
    identity: SSHIdentity | None = None
    secret: str | None = field(default=None, repr=False)

    @property
    def key(self) -> SSHKey | None:
        return self.identity.key if self.identity else None

    def describe(self) -> str:
        if self.identity is not None:
            return self.identity.label
        if self.kind is CredentialKind.TOKEN:
            return "personal access token"
        user = f" for {self.username}" if self.username else ""
        return f"username/password{user}"


@dataclass(frozen=True)
class Exhausted:
    """Terminal failure: no candidate left that the remote would accept."""

    host: str
    attempts: int
    rejected: tuple[CredentialKind, ...]

    def to_error(self) -> AuthenticationExhausted:
        return AuthenticationExhausted(
            self.host, self.attempts, [kind.value for kind in self.rejected]
        )


class HostHints:
    """Process-wide memory of which credential kind last worked per host.

    Nothing is persisted; the hints live as long as the process.
    """

    _instance: ClassVar[HostHints | None] = None

    def __init__(self) -> None:
        self._winners: dict[str, CredentialKind] = {}

    @classmethod
    def get_instance(cls) -> HostHints:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton instance. Useful for testing."""
        cls._instance = None

    def remember(self, host_id: str, kind: CredentialKind) -> None:
        self._winners[host_id] = kind

    def preferred(self, host_id: str) -> CredentialKind | None:
        return self._winners.get(host_id)


ProgressSink = Callable[[str], None]


def log_progress(message: str) -> None:
    get_logger("transport").info(message)


class CredentialNegotiator:
    """Chooses the next credential to offer a host.

    Args:
        host: The resolved host being negotiated with
        key_locator: Source of SSH candidates
        password: Provider for passphrases, usernames and passwords; None
            means secret-bearing candidates are skipped rather than prompted
        ssh_key: Explicit key (path or SSHKeyMaterial); disables discovery
        token: Personal access token for HTTPS hosts
        token_username: User name sent along with the token
        priority: Order of credential kinds
        verbose: Report every transition to ``progress``
        progress: Sink for verbose messages
        hints: Host hint registry; defaults to the process-wide one
    """

    def __init__(
        self,
        host: ResolvedHost,
        key_locator: KeyLocator | None = None,
        password: PasswordProvider | None = None,
        ssh_key: str | os.PathLike | SSHKey | None = None,
        token: str | None = None,
        token_username: str = "x-access-token",
        priority: Sequence[CredentialKind] = DEFAULT_PRIORITY,
        verbose: bool = False,
        progress: ProgressSink | None = None,
        hints: HostHints | None = None,
    ):
        self.host = host
        self.key_locator = key_locator or KeyLocator()
        self.password = password
        self.ssh_key = ssh_key
        self.token = token or None
        self.token_username = token_username
        self.priority = tuple(priority)
        self.verbose = verbose
        self.progress = progress or log_progress
        self.hints = hints if hints is not None else HostHints.get_instance()

        self.state = NegotiationState.INIT
        self.attempts = 0
        self.rejected: list[CredentialKind] = []
        self.last_error: str | None = None
        self._queue: deque[Candidate] = deque()
        self._built_ssh = False
        self._built_https = False
        self._outstanding: Candidate | None = None
        self._accepted: Candidate | None = None
        self._secrets: dict[CredentialKind, str] = {}

    @property
    def host_id(self) -> str:
        return self.host.host_id

    @property
    def accepted(self) -> Candidate | None:
        return self._accepted

    @property
    def outstanding(self) -> Candidate | None:
        """The candidate offered last and not yet accepted or rejected."""
        return self._outstanding

    def for_host(self, host: ResolvedHost) -> CredentialNegotiator:
        """A fresh negotiator with the same settings for another host."""
        return CredentialNegotiator(
            host,
            key_locator=self.key_locator,
            password=self.password,
            ssh_key=self.ssh_key,
            token=self.token,
            token_username=self.token_username,
            priority=self.priority,
            verbose=self.verbose,
            progress=self.progress,
            hints=self.hints,
        )

    def _report(self, message: str) -> None:
        logger.debug(message)
        if self.verbose:
            self.progress(message)

    def _order(self, candidates: Iterable[Candidate]) -> list[Candidate]:
        preferred = self.hints.preferred(self.host_id)
        rank = {kind: i for i, kind in enumerate(self.priority)}

        def key(c: Candidate) -> int:
            if c.kind is preferred:
                return -1
            return rank.get(c.kind, len(rank))

        # Kinds missing from the priority list are never offered
        return sorted((c for c in candidates if c.kind in rank), key=key)

    def _ssh_candidates(self) -> list[Candidate]:
        username = self.host.username or DEFAULT_SSH_USERNAME
        identities = self.key_locator.candidates_for(self.ssh_key, self.host_id)
        if identities and identities[0].source is IdentitySource.EXPLICIT:
            # A rejected explicit key may still be rescued by the agent
            identities = identities + self.key_locator.agent_candidates(self.host_id)
        candidates = []
        for identity in identities:
            kind = (
                CredentialKind.SSH_AGENT
                if identity.source is IdentitySource.AGENT
                else CredentialKind.SSH_KEY
            )
            candidates.append(Candidate(kind, username, identity))
        return candidates

    def _https_candidates(self) -> list[Candidate]:
        candidates = []
        if self.token:
            candidates.append(
                Candidate(
                    CredentialKind.TOKEN,
                    self.host.username or self.token_username,
                    secret=self.token,
                )
            )
        candidates.append(Candidate(CredentialKind.USERPASS, self.host.username))
        return candidates

    def _extend_queue(self, allowed: frozenset[CredentialKind]) -> None:
        added: list[Candidate] = []
        if not self._built_ssh and allowed & {CredentialKind.SSH_KEY, CredentialKind.SSH_AGENT}:
            self._built_ssh = True
            added += self._ssh_candidates()
        if not self._built_https and allowed & {CredentialKind.TOKEN, CredentialKind.USERPASS}:
            self._built_https = True
            added += self._https_candidates()
        if not added:
            return

        seen = {c.kind for c in self._queue} | set(self.rejected)
        unique = []
        for candidate in added:
            if candidate.kind not in seen:
                seen.add(candidate.kind)
                unique.append(candidate)
        self._queue = deque(self._order(list(self._queue) + unique))

    def _context(self, field: str, candidate: Candidate) -> PromptContext:
        key_path = None
        if isinstance(candidate.key, SSHKeyFile):
            key_path = str(candidate.key.private)
        return PromptContext(
            field=field,
            host=self.host_id,
            url=self.host.url,
            scheme=self.host.scheme,
            username=candidate.username,
            key_path=key_path,
        )

    def _resolve_secrets(self, candidate: Candidate) -> Candidate | None:
        """Fill in the secret a candidate needs, or None to skip it."""
        kind = candidate.kind
        if kind in self._secrets:
            return replace(candidate, secret=self._secrets[kind])

        if kind is CredentialKind.SSH_AGENT or kind is CredentialKind.TOKEN:
            return candidate

        if kind is CredentialKind.SSH_KEY:
            key = candidate.key
            if isinstance(key, SSHKeyMaterial) and key.passphrase:
                return replace(candidate, secret=key.passphrase)
            if candidate.identity is None or not candidate.identity.encrypted:
                return candidate
            if self.password is None:
                return None
            context = self._context("passphrase", candidate)
            where = context.key_path or "in-memory key"
            secret = self.password.ask(f"Please enter the passphrase for {where}", context)
            if secret is None:
                return None
            self._secrets[kind] = secret
            return replace(candidate, secret=secret)

        # USERPASS
        if self.password is None:
            return None
        username = candidate.username
        if not username:
            username = self.password.ask(
                f"Username for '{self.host.scheme}://{self.host_id}'",
                self._context("username", candidate),
            )
            if not username:
                return None
            candidate = replace(candidate, username=username)
        secret = self.password.ask(
            f"Password for '{self.host.scheme}://{username}@{self.host_id}'",
            self._context("password", candidate),
        )
        if secret is None:
            return None
        self._secrets[kind] = secret
        return replace(candidate, secret=secret)

    def offer(
        self,
        allowed: Iterable[CredentialKind],
        previous_rejected: bool | None = None,
    ) -> Candidate | Exhausted:
        """Next candidate the remote may accept, or Exhausted.

        Args:
            allowed: Credential kinds the remote currently advertises
            previous_rejected: Whether the last offered candidate was rejected;
                None infers a rejection from an outstanding offer
        """
        allowed = frozenset(allowed)
        if self.state is NegotiationState.EXHAUSTED:
            return self._exhausted()

        if self._outstanding is not None:
            if previous_rejected is None or previous_rejected:
                self.reject()
            else:
                self.accept()

        if self.state is NegotiationState.ACCEPTED and self._accepted is not None:
            # A later challenge in the same operation reuses the winner once
            if self._accepted.kind in allowed:
                self.state = NegotiationState.OFFERING
                return self._issue(self._accepted)

        self.state = NegotiationState.OFFERING
        self._extend_queue(allowed)

        for candidate in list(self._queue):
            if candidate.kind not in allowed or candidate.kind in self.rejected:
                continue
            self._queue.remove(candidate)
            resolved = self._resolve_secrets(candidate)
            if resolved is None:
                self._report(f"Skipping {candidate.describe()} for {self.host_id}: no secret available")
                continue
            return self._issue(resolved)

        self.state = NegotiationState.EXHAUSTED
        return self._exhausted()

    def _issue(self, candidate: Candidate) -> Candidate:
        self.attempts += 1
        self._outstanding = candidate
        self._report(f"Authenticating to {self.host_id} with {candidate.describe()} (attempt {self.attempts})")
        return candidate

    def _exhausted(self) -> Exhausted:
        self._report(f"No more credentials to try for {self.host_id}")
        return Exhausted(self.host_id, self.attempts, tuple(self.rejected))

    def reject(self, reason: str | None = None) -> None:
        """The remote refused the outstanding candidate."""
        candidate = self._outstanding
        if candidate is None:
            return
        self._outstanding = None
        if self._accepted is candidate:
            self._accepted = None
        if candidate.kind not in self.rejected:
            self.rejected.append(candidate.kind)
        self._secrets.pop(candidate.kind, None)
        if reason:
            self.last_error = reason
        if candidate.kind is CredentialKind.USERPASS and self.password and candidate.secret:
            self.password.reject(
                self._context("password", candidate), candidate.username or "", candidate.secret
            )
        self._report(f"{self.host_id} rejected {candidate.describe()}")

    def accept(self) -> None:
        """The remote let the outstanding candidate through."""
        candidate = self._outstanding
        if candidate is None:
            return
        self._outstanding = None
        self.state = NegotiationState.ACCEPTED
        first = self._accepted is None
        self._accepted = candidate
        self.hints.remember(self.host_id, candidate.kind)
        if first:
            if candidate.kind is CredentialKind.USERPASS and self.password and candidate.secret:
                self.password.approve(
                    self._context("password", candidate), candidate.username or "", candidate.secret
                )
            self._report(f"Authenticated to {self.host_id} with {candidate.describe()}")
