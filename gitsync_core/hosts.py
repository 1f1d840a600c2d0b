"""Host identifiers for remotes.

A host identifier is the lower-cased host name of a remote URL, with the port
appended when it is not the scheme's default. It is the key under which the
negotiator remembers which credential kind worked for a host.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from logging_config import get_logger

from .errors import InvalidRemoteURL

if TYPE_CHECKING:
    import pygit2

logger = get_logger("hosts")

LOCAL_HOST = "localhost"

DEFAULT_PORTS = {"ssh": 22, "https": 443, "http": 80, "git": 9418}

_SCHEME_ALIASES = {"git+ssh": "ssh", "ssh+git": "ssh"}

# user@host:path, the scp-like syntax git accepts for SSH remotes
_SCP_LIKE = re.compile(
    r"^(?:(?P<user>[^@/]+)@)?(?P<host>\[[^\]]+\]|[^:/\[\]]+):(?!//)(?P<path>.*)$"
)
_WINDOWS_PATH = re.compile(r"^[A-Za-z]:[\\/]")
_HOSTNAME = re.compile(r"^[A-Za-z0-9._-]+$")


@dataclass(frozen=True)
class ResolvedHost:
    """A remote URL reduced to what credential negotiation needs."""

    host_id: str
    scheme: str
    username: str | None
    url: str

    @property
    def is_ssh(self) -> bool:
        return self.scheme == "ssh"

    @property
    def is_local(self) -> bool:
        return self.scheme == "file"


def _host_id(host: str, port: int | None, scheme: str) -> str:
    host = host.lower()
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    if port is not None and port != DEFAULT_PORTS.get(scheme):
        return f"{host}:{port}"
    return host


def _check_hostname(url: str, host: str) -> None:
    bare = host[1:-1] if host.startswith("[") and host.endswith("]") else host
    if not bare:
        raise InvalidRemoteURL(url, "missing host")
    if ":" in bare:
        # IPv6 literal
        if not re.fullmatch(r"[0-9A-Za-z:.%]+", bare):
            raise InvalidRemoteURL(url, f"invalid host {host!r}")
    elif not _HOSTNAME.match(bare):
        raise InvalidRemoteURL(url, f"invalid host {host!r}")


def _resolve_scheme_url(url: str) -> ResolvedHost:
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise InvalidRemoteURL(url, str(e)) from e

    scheme = parts.scheme.lower()
    scheme = _SCHEME_ALIASES.get(scheme, scheme)
    if scheme == "file":
        return ResolvedHost(LOCAL_HOST, "file", None, url)
    if not scheme:
        raise InvalidRemoteURL(url, "missing scheme")

    host = parts.hostname or ""
    _check_hostname(url, host)
    return ResolvedHost(
        host_id=_host_id(host, port, scheme),
        scheme=scheme,
        username=parts.username or None,
        url=url,
    )


def resolve_host(url: str) -> ResolvedHost:
    """Derive the host identifier and username hint from a remote URL.

    Accepts scheme URLs (``https://user@host:8443/x``), scp-like SSH remotes
    (``git@host:org/repo.git``) and local paths. Embedded credentials are
    dropped from the identifier; the user name survives as a hint.

    Raises:
        InvalidRemoteURL: If the URL is empty or its authority cannot be parsed
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidRemoteURL(str(url), "empty URL")
    url = url.strip()

    if "://" in url:
        resolved = _resolve_scheme_url(url)
    elif _WINDOWS_PATH.match(url):
        resolved = ResolvedHost(LOCAL_HOST, "file", None, url)
    else:
        match = _SCP_LIKE.match(url)
        if match:
            host = match.group("host")
            _check_hostname(url, host)
            resolved = ResolvedHost(
                host_id=_host_id(host, None, "ssh"),
                scheme="ssh",
                username=match.group("user") or None,
                url=url,
            )
        else:
            resolved = ResolvedHost(LOCAL_HOST, "file", None, url)

    logger.debug(f"Resolved {url} to host {resolved.host_id} ({resolved.scheme})")
    return resolved


def url_to_host(url: str) -> str:
    """Host identifier for a raw URL."""
    return resolve_host(url).host_id


def remote_to_host(repo: pygit2.Repository, remote: str) -> ResolvedHost:
    """Resolve the host of a configured remote from its fetch URL."""
    from .repository import get_remote

    return resolve_host(get_remote(repo, remote).url)
