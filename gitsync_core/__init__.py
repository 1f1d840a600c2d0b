"""gitsync core - credential negotiation for git remote operations.

This package provides the pieces every remote operation is built from:
- Host resolution for remote URLs
- SSH identity discovery
- The credential negotiation state machine
- Transport sessions over pygit2
- Bridging of libgit2 failures into typed errors

Usage:
    from gitsync_core import CredentialNegotiator, TransportSession, resolve_host

    host = resolve_host("git@github.com:org/repo.git")
    session = TransportSession(CredentialNegotiator(host))
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("gitsync")
except PackageNotFoundError:
    __version__ = "0.0.0"


def get_version() -> str:
    """Get the installed gitsync version."""
    return __version__

from gitsync_core.askpass import PasswordProvider, PromptContext, make_password_provider
from gitsync_core.config import GitSyncConfig, get_config
from gitsync_core.errors import (
    AuthenticationExhausted,
    GitSyncError,
    GitSyncWarning,
    InvalidRemoteURL,
    NativeFailure,
    NativeResult,
    NativeTransportError,
    NoRemoteConfigured,
    bail_if,
    bail_if_null,
    native_call,
    warn_last_msg,
)
from gitsync_core.hosts import ResolvedHost, resolve_host, url_to_host
from gitsync_core.keys import KeyLocator, SSHKeyFile, SSHKeyMaterial
from gitsync_core.negotiator import (
    Candidate,
    CredentialKind,
    CredentialNegotiator,
    Exhausted,
    HostHints,
)
from gitsync_core.session import (
    Operation,
    TransportOptions,
    TransportOutcome,
    TransportSession,
)

__all__ = [
    "__version__",
    "get_version",
    # Config
    "GitSyncConfig",
    "get_config",
    # Errors
    "AuthenticationExhausted",
    "GitSyncError",
    "GitSyncWarning",
    "InvalidRemoteURL",
    "NativeFailure",
    "NativeResult",
    "NativeTransportError",
    "NoRemoteConfigured",
    "bail_if",
    "bail_if_null",
    "native_call",
    "warn_last_msg",
    # Hosts and keys
    "ResolvedHost",
    "resolve_host",
    "url_to_host",
    "KeyLocator",
    "SSHKeyFile",
    "SSHKeyMaterial",
    # Negotiation
    "Candidate",
    "CredentialKind",
    "CredentialNegotiator",
    "Exhausted",
    "HostHints",
    "PasswordProvider",
    "PromptContext",
    "make_password_provider",
    # Transport
    "Operation",
    "TransportOptions",
    "TransportOutcome",
    "TransportSession",
]
