"""Error taxonomy and the bridge from libgit2 failures to Python exceptions.

libgit2 reports failures through a single process-wide "last error" slot that
the next native call may overwrite. pygit2 already reads that slot when it
raises, so the bridge never looks at global state: every native call goes
through ``native_call()``, which captures the failure into a ``NativeResult``
at the call site. ``bail_if()`` then turns a failed result into a
``NativeTransportError`` that callers can branch on by ``code`` and ``domain``.
"""

from __future__ import annotations

import re
import warnings
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pygit2
from pygit2.enums import CheckoutNotify

from logging_config import get_logger

logger = get_logger("transport")

# libgit2 error codes (git2/errors.h)
GIT_ERROR = -1
GIT_ENOTFOUND = -3
GIT_EEXISTS = -4
GIT_ENONFASTFORWARD = -11
GIT_EINVALIDSPEC = -12
GIT_ECONFLICT = -13
GIT_EAUTH = -16
GIT_ECERTIFICATE = -17

# Ordered: the first matching pattern names the domain
_DOMAIN_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("ssh", re.compile(r"\bssh\b|publickey|passphrase|private key|agent", re.I)),
    ("http", re.compile(r"\bhttps?\b|status code|redirect|authentication replays", re.I)),
    ("net", re.compile(r"resolve|connect|network|timed out|unreachable|socket|hostname", re.I)),
    ("checkout", re.compile(r"checkout|would be overwritten", re.I)),
    ("merge", re.compile(r"merge|conflict", re.I)),
    ("reference", re.compile(r"reference|refspec|\bref\b|branch", re.I)),
    ("config", re.compile(r"config", re.I)),
    ("repository", re.compile(r"repository|not a git", re.I)),
]

_AUTH_PATTERN = re.compile(
    r"authenticat|credential|permission denied|unauthori[sz]ed|\b401\b|\b403\b", re.I
)


class GitSyncError(Exception):
    """Base class for all gitsync errors."""


class InvalidRemoteURL(GitSyncError):
    """Raised when a remote URL cannot be parsed into a host."""

    def __init__(self, url: str, reason: str = "malformed URL"):
        self.url = url
        self.reason = reason
        super().__init__(f"Invalid remote URL {url!r}: {reason}")


class NoRemoteConfigured(GitSyncError):
    """Raised when no remote is named, tracked or available as the default."""

    def __init__(self, message: str = "No remote is set for this branch"):
        super().__init__(message)


class NoUpstreamConfigured(GitSyncError):
    """Raised by pull when the current branch tracks nothing."""

    def __init__(
        self,
        message: str = "No upstream configured for current branch, please specify a remote",
    ):
        super().__init__(message)


class DetachedHead(GitSyncError):
    """Raised by pull when HEAD does not point at a branch."""

    def __init__(self, message: str = "Repository is currently in a detached head state"):
        super().__init__(message)


class RepositoryNotFound(GitSyncError):
    """Raised when a path is not inside a git repository."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Could not find a git repository at {path!r}")


class SSHKeyNotFound(GitSyncError):
    """Raised when an explicitly requested SSH private key does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"SSH private key not found: {path}")


class UpstreamMissingAfterFetch(GitSyncError):
    """Raised when a fetch completed but the upstream branch still does not exist."""

    def __init__(self, upstream: str):
        self.upstream = upstream
        super().__init__(f"Failed to fetch upstream branch: {upstream}")


class RebaseConflict(GitSyncError):
    """Raised when a rebase onto the upstream stops on conflicts."""

    def __init__(self, upstream: str, detail: str = ""):
        self.upstream = upstream
        self.detail = detail
        super().__init__(
            f"Found conflicts, rebase onto {upstream} not possible. Retry with rebase = False"
        )


class MergeConflict(GitSyncError):
    """Raised when merging the upstream leaves conflicted paths."""

    def __init__(self, upstream: str, paths: list[str]):
        self.upstream = upstream
        self.paths = paths
        listing = ", ".join(paths[:10])
        super().__init__(f"Merge of {upstream} stopped on conflicts: {listing}")


class AuthenticationExhausted(GitSyncError):
    """Raised when every credential candidate for a host has been rejected or skipped."""

    def __init__(self, host: str, attempts: int, rejected: list[str]):
        self.host = host
        self.attempts = attempts
        self.rejected = rejected
        tried = ", ".join(rejected) if rejected else "none available"
        super().__init__(
            f"Authentication to {host} failed after {attempts} attempt(s); "
            f"rejected credentials: {tried}"
        )


class NativeTransportError(GitSyncError):
    """A libgit2 failure carried over verbatim.

    Attributes:
        code: libgit2 error code (negative integer)
        domain: libgit2 error class, e.g. "net", "ssh", "http", "reference"
        message: the original libgit2 message
        context: label of the failing call
        phase: "connect", "negotiate" or "transfer" for transport calls
    """

    def __init__(
        self,
        code: int,
        domain: str,
        message: str,
        context: str,
        phase: str | None = None,
    ):
        self.code = code
        self.domain = domain
        self.message = message
        self.context = context
        self.phase = phase
        where = f"{context} ({phase})" if phase else context
        super().__init__(f"{where}: {message} [{domain}, code {code}]")

    @property
    def is_auth_failure(self) -> bool:
        return self.code == GIT_EAUTH or bool(_AUTH_PATTERN.search(self.message))

    @classmethod
    def from_failure(
        cls, failure: NativeFailure, context: str, phase: str | None = None
    ) -> NativeTransportError:
        return cls(failure.code, failure.domain, failure.message, context, phase)


class GitSyncWarning(UserWarning):
    """Non-fatal condition reported by the native layer."""


@dataclass(frozen=True)
class NativeFailure:
    """A captured libgit2 failure record."""

    code: int
    domain: str
    message: str


@dataclass(frozen=True)
class NativeResult:
    """Outcome of one native call: a value or a captured failure."""

    value: Any = None
    failure: NativeFailure | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def classify_domain(message: str) -> str:
    """Guess the libgit2 error class from its message."""
    for domain, pattern in _DOMAIN_PATTERNS:
        if pattern.search(message):
            return domain
    return "invalid"


def _code_for(exc: BaseException, message: str) -> int:
    if isinstance(exc, pygit2.AlreadyExistsError):
        return GIT_EEXISTS
    if isinstance(exc, pygit2.InvalidSpecError):
        return GIT_EINVALIDSPEC
    if isinstance(exc, KeyError):
        return GIT_ENOTFOUND
    lowered = message.lower()
    if _AUTH_PATTERN.search(message):
        return GIT_EAUTH
    if "certificate" in lowered:
        return GIT_ECERTIFICATE
    if "non-fast" in lowered or "not present locally" in lowered:
        return GIT_ENONFASTFORWARD
    if "conflict" in lowered:
        return GIT_ECONFLICT
    return GIT_ERROR


def failure_from_exception(exc: BaseException) -> NativeFailure:
    """Build a failure record from the exception pygit2 raised."""
    if isinstance(exc, KeyError) and exc.args:
        message = str(exc.args[0])
    else:
        message = str(exc) or type(exc).__name__
    domain = "os" if isinstance(exc, OSError) else classify_domain(message)
    return NativeFailure(code=_code_for(exc, message), domain=domain, message=message)


def native_call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> NativeResult:
    """Invoke a pygit2 call and capture its failure at the call site.

    GitSyncError raised from inside our own callbacks (pygit2 re-raises them
    after the native call returns) is not a native failure and propagates as is.
    """
    try:
        value = fn(*args, **kwargs)
    except GitSyncError:
        raise
    except (pygit2.GitError, KeyError, ValueError, OSError) as e:
        return NativeResult(failure=failure_from_exception(e), error=e)
    return NativeResult(value=value)


def bail_if(result: NativeResult, context: str, phase: str | None = None) -> Any:
    """Return the value of a successful call, raise NativeTransportError otherwise."""
    failure = result.failure
    if failure is None:
        return result.value
    error = NativeTransportError.from_failure(failure, context, phase)
    logger.debug(f"{context} failed: {failure.message}")
    raise error from result.error


def bail_if_null(result: NativeResult | Any, context: str) -> Any:
    """Like bail_if, and also fail when the lookup produced nothing."""
    if isinstance(result, NativeResult):
        value = bail_if(result, context)
    else:
        value = result
    if value is None:
        raise NativeTransportError(
            GIT_ENOTFOUND, "invalid", f"{context} returned nothing", context
        )
    return value


def warn_last_msg(failure: NativeFailure | NativeResult | None, context: str = "") -> None:
    """Emit a non-fatal warning for a captured failure; never raises."""
    if isinstance(failure, NativeResult):
        failure = failure.failure
    if failure is None:
        return
    prefix = f"{context}: " if context else ""
    text = f"{prefix}libgit2 warning: {failure.message} ({failure.domain})"
    logger.warning(text)
    warnings.warn(text, GitSyncWarning, stacklevel=2)


class OverwriteNotifier(pygit2.CheckoutCallbacks):
    """Checkout callbacks that warn about local changes a checkout would overwrite."""

    def __init__(self):
        super().__init__()
        self.conflicts: list[str] = []

    def checkout_notify_flags(self) -> CheckoutNotify:
        return CheckoutNotify.CONFLICT

    def checkout_notify(self, why, path, baseline, target, workdir):
        if why == CheckoutNotify.CONFLICT:
            self.conflicts.append(path)
            warn_last_msg(
                NativeFailure(
                    GIT_ECONFLICT,
                    "checkout",
                    f"Your local changes to the following file would be overwritten "
                    f"by checkout: {path}",
                ),
                "checkout",
            )
