"""SSH identity discovery.

Produces the ordered SSH candidates for a host:

1. an explicitly requested key is the only candidate;
2. otherwise the identities loaded in ssh-agent;
3. otherwise the user's default key pair under ~/.ssh.

Passphrases are never read here. The negotiator asks for them when a
candidate is actually offered.
"""

from __future__ import annotations

import base64
import os
import struct
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from logging_config import get_logger

from .errors import SSHKeyNotFound

logger = get_logger("keys")

DEFAULT_KEY_NAMES = ("id_ed25519", "id_ecdsa", "id_rsa")

_OPENSSH_MAGIC = b"openssh-key-v1\x00"


@dataclass(frozen=True)
class SSHKeyFile:
    """A private key on disk, with its public half when present."""

    private: Path
    public: Path | None = None


@dataclass(frozen=True)
class SSHKeyMaterial:
    """An in-memory key pair."""

    private: str = field(repr=False)
    public: str
    passphrase: str | None = field(default=None, repr=False)


SSHKey = SSHKeyFile | SSHKeyMaterial


@dataclass(frozen=True)
class AgentIdentity:
    """One public key listed by ssh-agent."""

    key_type: str
    blob: str = field(repr=False)
    comment: str = ""

    @classmethod
    def parse(cls, line: str) -> AgentIdentity | None:
        parts = line.strip().split(None, 2)
        if len(parts) < 2:
            return None
        return cls(parts[0], parts[1], parts[2] if len(parts) > 2 else "")


class IdentitySource(Enum):
    EXPLICIT = "explicit"
    AGENT = "agent"
    DEFAULT = "default"


@dataclass(frozen=True)
class SSHIdentity:
    """An SSH candidate: a key (explicit or default) or the agent.

    libgit2 authenticates against the agent as a whole, trying each loaded
    identity in agent order, so all agent identities travel in one candidate.
    """

    source: IdentitySource
    key: SSHKey | None = None
    agent_keys: tuple[AgentIdentity, ...] = ()
    encrypted: bool = False

    @property
    def label(self) -> str:
        if self.source is IdentitySource.AGENT:
            names = ", ".join(k.comment or k.key_type for k in self.agent_keys)
            return f"ssh-agent ({names})" if names else "ssh-agent"
        if isinstance(self.key, SSHKeyFile):
            return f"{self.source.value} key {self.key.private}"
        return f"{self.source.value} in-memory key"


class AgentProbe(Protocol):
    def list_identities(self) -> list[AgentIdentity] | None:
        """Loaded identities in agent order, or None when no agent is reachable."""
        ...


class SshAddAgentProbe:
    """Lists agent identities with ``ssh-add -L``."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    def list_identities(self) -> list[AgentIdentity] | None:
        if os.name != "nt" and not os.getenv("SSH_AUTH_SOCK"):
            return None
        try:
            result = subprocess.run(
                ["ssh-add", "-L"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            logger.debug(f"ssh-agent query failed: {e}")
            return None

        # 1: agent reachable but empty, 2: cannot connect
        if result.returncode == 1:
            return []
        if result.returncode != 0:
            return None

        identities = []
        for line in result.stdout.splitlines():
            identity = AgentIdentity.parse(line)
            if identity:
                identities.append(identity)
        return identities


def default_key_pair(ssh_dir: Path | None = None) -> SSHKeyFile | None:
    """The user's default key pair, probing the conventional names in order."""
    ssh_dir = ssh_dir or Path.home() / ".ssh"
    for name in DEFAULT_KEY_NAMES:
        private = ssh_dir / name
        if private.is_file():
            public = private.with_name(name + ".pub")
            return SSHKeyFile(private, public if public.is_file() else None)
    return None


def _openssh_is_encrypted(text: str) -> bool:
    body = "".join(
        line.strip()
        for line in text.splitlines()
        if line.strip() and not line.startswith("-----")
    )
    try:
        raw = base64.b64decode(body)
    except ValueError:
        return False
    if not raw.startswith(_OPENSSH_MAGIC):
        return False
    offset = len(_OPENSSH_MAGIC)
    if len(raw) < offset + 4:
        return False
    (length,) = struct.unpack(">I", raw[offset : offset + 4])
    cipher = raw[offset + 4 : offset + 4 + length]
    return cipher != b"none"


def is_encrypted(key: SSHKey) -> bool:
    """Whether a private key needs a passphrase to load."""
    if isinstance(key, SSHKeyMaterial):
        text = key.private
    else:
        try:
            text = key.private.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning(f"Could not read {key.private}: {e}")
            return False

    if "BEGIN OPENSSH PRIVATE KEY" in text:
        return _openssh_is_encrypted(text)
    # PEM: "Proc-Type: 4,ENCRYPTED" or "BEGIN ENCRYPTED PRIVATE KEY"
    return "ENCRYPTED" in text


def normalize_key(explicit_key: str | os.PathLike | SSHKey) -> SSHKey:
    """Turn a path or key object into an SSHKey, checking that files exist."""
    if isinstance(explicit_key, SSHKeyMaterial):
        return explicit_key
    if isinstance(explicit_key, SSHKeyFile):
        private = explicit_key.private.expanduser()
        public = explicit_key.public
    else:
        private = Path(explicit_key).expanduser()
        public = None
    if not private.is_file():
        raise SSHKeyNotFound(str(private))
    if public is None:
        candidate = private.with_name(private.name + ".pub")
        public = candidate if candidate.is_file() else None
    return SSHKeyFile(private, public)


class KeyLocator:
    """Finds the SSH identities to offer for a host."""

    def __init__(self, agent: AgentProbe | None = None, ssh_dir: Path | None = None):
        self.agent = agent if agent is not None else SshAddAgentProbe()
        self.ssh_dir = ssh_dir

    def candidates_for(
        self, explicit_key: str | os.PathLike | SSHKey | None, host_id: str
    ) -> list[SSHIdentity]:
        """Ordered SSH candidates for ``host_id``; empty when nothing is available."""
        if explicit_key is not None:
            key = normalize_key(explicit_key)
            logger.debug(f"Using explicit SSH key for {host_id}")
            return [SSHIdentity(IdentitySource.EXPLICIT, key, encrypted=is_encrypted(key))]

        agent = self.agent_candidates(host_id)
        if agent:
            return agent

        pair = default_key_pair(self.ssh_dir)
        if pair is not None:
            logger.debug(f"Falling back to default key {pair.private} for {host_id}")
            return [SSHIdentity(IdentitySource.DEFAULT, pair, encrypted=is_encrypted(pair))]

        logger.debug(f"No SSH identities available for {host_id}")
        return []

    def agent_candidates(self, host_id: str) -> list[SSHIdentity]:
        """The agent as a candidate, if it is reachable and holds identities."""
        identities = self.agent.list_identities()
        if not identities:
            return []
        logger.debug(f"ssh-agent offers {len(identities)} identities for {host_id}")
        return [SSHIdentity(IdentitySource.AGENT, agent_keys=tuple(identities))]
