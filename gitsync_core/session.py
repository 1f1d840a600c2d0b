"""Transport sessions: one fetch, push, clone or ls-remote against a remote.

The session installs ``NegotiatingCallbacks`` on the pygit2 call so that each
credential challenge goes through a ``CredentialNegotiator``, watches the
callbacks to know which phase (connect, negotiate, transfer) a failure
happened in, and bridges libgit2 failures into ``NativeTransportError``.
Exhausted negotiation is raised as ``AuthenticationExhausted`` instead.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any

import pygit2
from pygit2.enums import CredentialType, FetchPrune

from logging_config import get_logger

from .errors import (
    GIT_ENONFASTFORWARD,
    InvalidRemoteURL,
    NativeTransportError,
    bail_if,
    classify_domain,
    native_call,
)
from .hosts import ResolvedHost, resolve_host
from .keys import SSHKeyFile, SSHKeyMaterial
from .negotiator import (
    DEFAULT_SSH_USERNAME,
    Candidate,
    CredentialKind,
    CredentialNegotiator,
    Exhausted,
    ProgressSink,
    log_progress,
)
from .repository import repo_path, set_upstream

logger = get_logger("transport")


class Operation(Enum):
    FETCH = "fetch"
    PUSH = "push"
    CLONE = "clone"
    LS_REMOTE = "ls-remote"


@dataclass
class TransportOptions:
    """Per-call switches.

    ``set_upstream`` is ``(branch, "<remote>/<branch>")`` to record after a
    successful push.
    """

    prune: bool = False
    bare: bool = False
    mirror: bool = False
    branch: str | None = None
    set_upstream: tuple[str, str] | None = None
    verbose: bool = False
    progress: ProgressSink | None = None


@dataclass
class TransportOutcome:
    """Result of a successful transport call."""

    operation: Operation
    host: str
    refs_updated: list[str] = field(default_factory=list)
    objects_received: int = 0
    bytes_received: int = 0
    heads: list[dict[str, str | None]] = field(default_factory=list)
    repo: pygit2.Repository | None = None
    upstream_set: str | None = None
    auth_kind: CredentialKind | None = None

    @property
    def path(self) -> str | None:
        return repo_path(self.repo) if self.repo is not None else None


def advertised_kinds(allowed_types: CredentialType) -> frozenset[CredentialKind]:
    """Credential kinds a libgit2 ``allowed_types`` mask admits."""
    kinds = set()
    if allowed_types & (CredentialType.SSH_KEY | CredentialType.SSH_MEMORY):
        kinds.add(CredentialKind.SSH_KEY)
    if allowed_types & CredentialType.SSH_KEY:
        kinds.add(CredentialKind.SSH_AGENT)
    if allowed_types & CredentialType.USERPASS_PLAINTEXT:
        kinds.update((CredentialKind.TOKEN, CredentialKind.USERPASS))
    return frozenset(kinds)


def credential_allowed(candidate: Candidate, allowed_types: CredentialType) -> bool:
    """Whether libgit2 will take this candidate's credential type for ``allowed_types``.

    A key file travels as SSH_KEY, in-memory key material as SSH_MEMORY.
    """
    if candidate.kind is CredentialKind.SSH_KEY:
        if isinstance(candidate.key, SSHKeyMaterial):
            return bool(allowed_types & CredentialType.SSH_MEMORY)
        return bool(allowed_types & CredentialType.SSH_KEY)
    if candidate.kind is CredentialKind.SSH_AGENT:
        return bool(allowed_types & CredentialType.SSH_KEY)
    return bool(allowed_types & CredentialType.USERPASS_PLAINTEXT)


def to_credential(candidate: Candidate, username_from_url: str | None = None):
    """Build the pygit2 credential object for a candidate."""
    username = candidate.username or username_from_url or DEFAULT_SSH_USERNAME
    if candidate.kind is CredentialKind.SSH_AGENT:
        return pygit2.KeypairFromAgent(username)
    if candidate.kind is CredentialKind.SSH_KEY:
        key = candidate.key
        if isinstance(key, SSHKeyMaterial):
            return pygit2.KeypairFromMemory(username, key.public, key.private, candidate.secret)
        if isinstance(key, SSHKeyFile):
            public = os.fspath(key.public) if key.public else None
            return pygit2.Keypair(username, public, os.fspath(key.private), candidate.secret)
        raise ValueError(f"{candidate.describe()} carries no SSH key")
    return pygit2.UserPass(candidate.username or username_from_url or "", candidate.secret or "")


class NegotiatingCallbacks(pygit2.RemoteCallbacks):
    """Remote callbacks that route credential challenges through negotiators."""

    def __init__(
        self,
        negotiator: CredentialNegotiator,
        verbose: bool = False,
        progress: ProgressSink | None = None,
        negotiators: dict[str, CredentialNegotiator] | None = None,
    ):
        super().__init__()
        self.negotiator = negotiator
        # Shared across retries so a rejected kind stays rejected
        self.negotiators = negotiators if negotiators is not None else {}
        self.negotiators.setdefault(negotiator.host_id, negotiator)
        self.verbose = verbose
        self.progress = progress or log_progress
        self.challenged = False
        self.proceeded = False
        self.exhausted: Exhausted | None = None
        self.updated_refs: list[str] = []
        self.push_rejections: dict[str, str] = {}
        self.stats: Any = None

    @property
    def phase(self) -> str:
        if self.proceeded:
            return "transfer"
        if self.challenged:
            return "negotiate"
        return "connect"

    def _negotiator_for(self, url: str) -> CredentialNegotiator:
        try:
            host = resolve_host(url)
        except InvalidRemoteURL:
            return self.negotiator
        if host.host_id not in self.negotiators:
            self.negotiators[host.host_id] = self.negotiator.for_host(host)
        return self.negotiators[host.host_id]

    def _mark_proceeded(self) -> None:
        if not self.proceeded:
            self.proceeded = True
            for negotiator in self.negotiators.values():
                negotiator.accept()

    def credentials(self, url, username_from_url, allowed_types):
        self.challenged = True
        if allowed_types == CredentialType.USERNAME:
            return pygit2.Username(username_from_url or DEFAULT_SSH_USERNAME)

        negotiator = self._negotiator_for(url)
        kinds = advertised_kinds(allowed_types)
        while True:
            result = negotiator.offer(kinds)
            if isinstance(result, Exhausted):
                self.exhausted = result
                raise result.to_error()
            if credential_allowed(result, allowed_types):
                return to_credential(result, username_from_url)
            # Each rejection uses up a kind, so this ends in an offer or Exhausted
            negotiator.reject(f"{result.describe()} is not a credential type the remote accepts")

    def sideband_progress(self, string):
        self._mark_proceeded()
        if self.verbose and string.strip():
            self.progress(f"remote: {string.strip()}")

    def transfer_progress(self, stats):
        self._mark_proceeded()
        self.stats = stats
        if self.verbose and stats.total_objects and stats.received_objects == stats.total_objects:
            self.progress(
                f"Received {stats.received_objects}/{stats.total_objects} objects "
                f"({stats.received_bytes} bytes)"
            )

    def update_tips(self, refname, old, new):
        self._mark_proceeded()
        self.updated_refs.append(refname)
        if self.verbose:
            self.progress(f"[updated] {refname} {str(old)[:7]}..{str(new)[:7]}")

    def push_transfer_progress(self, objects_pushed, total_objects, bytes_pushed):
        self._mark_proceeded()
        if self.verbose and total_objects and objects_pushed == total_objects:
            self.progress(f"Pushed {objects_pushed}/{total_objects} objects ({bytes_pushed} bytes)")

    def push_update_reference(self, refname, message):
        self._mark_proceeded()
        if message:
            self.push_rejections[refname] = message
        else:
            self.updated_refs.append(refname)


def _mirror_remote(repo: pygit2.Repository, name: str | bytes, url: str | bytes):
    # pygit2 hands the clone callback raw C strings
    if isinstance(name, bytes):
        name = name.decode()
    if isinstance(url, bytes):
        url = url.decode()
    remote = repo.remotes.create(name, url, "+refs/*:refs/*")
    repo.config[f"remote.{name}.mirror"] = True
    return remote


def _head_entry(head: Any) -> dict[str, str | None]:
    if isinstance(head, dict):
        name, oid, symref = head.get("name"), head.get("oid"), head.get("symref_target")
    else:
        name, oid, symref = head.name, head.oid, getattr(head, "symref_target", None)
    return {"ref": name, "id": str(oid) if oid is not None else None, "symref": symref or None}


class TransportSession:
    """Runs one transport operation with credential negotiation.

    Usage:
        session = TransportSession(negotiator, TransportOptions(prune=True))
        outcome = session.run(Operation.FETCH, repo=repo, remote="origin")
    """

    def __init__(self, negotiator: CredentialNegotiator, options: TransportOptions | None = None):
        self.negotiator = negotiator
        self.options = options or TransportOptions()
        self.negotiators: dict[str, CredentialNegotiator] = {negotiator.host_id: negotiator}

    @property
    def host(self) -> ResolvedHost:
        return self.negotiator.host

    def _callbacks(self) -> NegotiatingCallbacks:
        return NegotiatingCallbacks(
            self.negotiator,
            verbose=self.options.verbose,
            progress=self.options.progress,
            negotiators=self.negotiators,
        )

    def run(
        self,
        operation: Operation,
        repo: pygit2.Repository | None = None,
        remote: str | None = None,
        url: str | None = None,
        path: str | None = None,
        refspecs: list[str] | None = None,
    ) -> TransportOutcome:
        """Drive ``operation`` to completion.

        Raises:
            AuthenticationExhausted: If no credential got through
            NativeTransportError: For any other libgit2 failure
        """
        context = f"git_{operation.value.replace('-', '_')}"
        if operation is Operation.CLONE:
            call = partial(self._clone, url, path)
        else:
            handle = bail_if(
                native_call(repo.remotes.__getitem__, remote),
                f"git_remote_lookup '{remote}'",
                phase="connect",
            )
            call = partial(self._remote_call, operation, handle, refspecs)

        logger.info(
            f"Starting {operation.value} ({'remote ' + remote if remote else url})",
            extra={"host": self.host.host_id},
        )
        while True:
            callbacks = self._callbacks()
            result = native_call(call, callbacks)
            if result.ok:
                break
            if self._retry_after(callbacks, result.failure.message):
                continue
            bail_if(result, context, phase=callbacks.phase)

        for negotiator in callbacks.negotiators.values():
            negotiator.accept()

        if callbacks.push_rejections:
            refname, message = next(iter(callbacks.push_rejections.items()))
            code = GIT_ENONFASTFORWARD if "fast" in message.lower() else -1
            raise NativeTransportError(
                code, "reference", f"{refname}: {message}", context, phase="transfer"
            )

        return self._outcome(operation, repo, result.value, callbacks)

    def _retry_after(self, callbacks: NegotiatingCallbacks, message: str) -> bool:
        """Reject the outstanding credential when libgit2 gave up on it by itself."""
        if callbacks.proceeded or not callbacks.challenged:
            return False
        if classify_domain(message) not in ("ssh", "http") and "auth" not in message.lower():
            return False
        retried = False
        for negotiator in callbacks.negotiators.values():
            if negotiator.outstanding is not None:
                negotiator.reject(message)
                retried = True
        if retried:
            logger.debug(f"Retrying after credential failure: {message}")
        return retried

    def _remote_call(self, operation, remote, refspecs, callbacks):
        if operation is Operation.FETCH:
            prune = FetchPrune.PRUNE if self.options.prune else FetchPrune.UNSPECIFIED
            return remote.fetch(refspecs or None, callbacks=callbacks, prune=prune)
        if operation is Operation.PUSH:
            return remote.push(refspecs or [], callbacks=callbacks)
        lister = getattr(remote, "list_heads", None) or remote.ls_remotes
        return lister(callbacks=callbacks)

    def _clone(self, url, path, callbacks):
        opts = self.options
        return pygit2.clone_repository(
            url,
            path,
            bare=opts.bare or opts.mirror,
            remote=_mirror_remote if opts.mirror else None,
            checkout_branch=opts.branch,
            callbacks=callbacks,
        )

    def _outcome(self, operation, repo, value, callbacks) -> TransportOutcome:
        accepted = self.negotiator.accepted
        outcome = TransportOutcome(
            operation=operation,
            host=self.host.host_id,
            refs_updated=list(callbacks.updated_refs),
            repo=repo,
            auth_kind=accepted.kind if accepted else None,
        )
        stats = value if operation is Operation.FETCH else callbacks.stats
        if stats is not None:
            outcome.objects_received = stats.received_objects
            outcome.bytes_received = stats.received_bytes

        if operation is Operation.LS_REMOTE:
            outcome.heads = [_head_entry(head) for head in value]
        elif operation is Operation.CLONE:
            outcome.repo = value
        elif operation is Operation.PUSH and self.options.set_upstream:
            # Only after the push itself went through
            branch, upstream = self.options.set_upstream
            set_upstream(repo, branch, upstream)
            outcome.upstream_set = upstream
            logger.info(f"Branch {branch} now tracks {upstream}")

        logger.info(
            f"{operation.value} complete ({len(outcome.refs_updated)} refs updated)",
            extra={"host": self.host.host_id},
        )
        return outcome
