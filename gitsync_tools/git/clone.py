"""
Git clone operations.
"""

from __future__ import annotations

import os
from typing import Optional, Union

from gitsync_core.hosts import resolve_host
from gitsync_core.keys import SSHKey
from gitsync_core.session import Operation, TransportOptions, TransportSession
from logging_config import get_logger

from .credential import askpass
from .remote import Password, _tool, _verbose, make_negotiator

logger = get_logger("git")


def default_clone_path(url: str) -> str:
    """Extract the directory name from the URL: https://host/owner/repo.git -> ./repo"""
    name = url.rstrip('/').rsplit('/', 1)[-1].rsplit(':', 1)[-1]
    if name.endswith('.git'):
        name = name[:-4]
    return os.path.join(os.getcwd(), name)


def git_clone(
    url: str,
    path: Optional[str] = None,
    branch: Optional[str] = None,
    password: Password = askpass,
    ssh_key: Union[str, os.PathLike, SSHKey, None] = None,
    bare: bool = False,
    mirror: bool = False,
    verbose: Optional[bool] = None,
) -> str:
    """
    Clone a git repository.

    Args:
        url: Repository URL (HTTPS, SSH or local path)
        path: Target directory (default: repository name in the current directory)
        branch: Branch to check out
        password: Secret string or callback for passwords and passphrases
        ssh_key: Path or SSHKeyMaterial; disables SSH key discovery
        bare: Create a bare repository
        mirror: Bare clone that mirrors every remote ref
        verbose: Report authentication and transfer progress

    Returns:
        Path of the new repository
    """
    if not isinstance(url, str):
        raise TypeError("url must be a string")
    if path is None:
        path = default_clone_path(url)
    if not isinstance(path, (str, os.PathLike)):
        raise TypeError("path must be a string")
    if branch is not None and not isinstance(branch, str):
        raise TypeError("branch must be a string")

    path = os.path.abspath(os.path.expanduser(os.fspath(path)))
    verbose = _verbose(verbose)
    host = resolve_host(url)

    session = TransportSession(
        make_negotiator(host, password, ssh_key, verbose),
        TransportOptions(bare=bool(bare), mirror=bool(mirror), branch=branch, verbose=verbose),
    )
    outcome = session.run(Operation.CLONE, url=url, path=path)
    logger.info(f"Cloned {url} to {outcome.path}")
    return outcome.path


# Tool definition for the tools system
TOOLS = [
    {
        "name": "git_clone",
        "description": "Clone a git repository. Authentication is negotiated automatically.",
        "parameters": {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "Repository URL (e.g., https://github.com/owner/repo)"
                },
                "path": {
                    "type": "string",
                    "description": "Target directory (default: repository name)"
                },
                "branch": {
                    "type": "string",
                    "description": "Specific branch to check out"
                },
                "bare": {
                    "type": "boolean",
                    "description": "Create a bare repository"
                },
                "mirror": {
                    "type": "boolean",
                    "description": "Mirror all refs of the remote"
                }
            },
            "required": ["url"]
        },
        "function": _tool(git_clone, "Clone complete")
    }
]
