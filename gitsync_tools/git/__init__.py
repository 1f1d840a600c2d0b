"""
Git remote synchronization tools.

This package exposes the remote operations built on the credential
negotiation core, with authentication resolved per host.

Tools:
    git_clone       - Clone a repository
    git_fetch       - Fetch refs
    git_push        - Push to remote
    git_pull        - Fetch and merge/rebase the upstream
    git_remote_ls   - List remote refs
"""

from .clone import git_clone, TOOLS as CLONE_TOOLS
from .credential import askpass, CredentialHelperProvider
from .remote import (
    force_refspec,
    git_fetch,
    git_fetch_pull_requests,
    git_pull,
    git_push,
    git_remote_ls,
    mirror_refspecs,
    resolve_remote_name,
    TOOLS as REMOTE_TOOLS,
)

# Module metadata
MODULE_NAME = "git"
MODULE_VERSION = "1.0.0"

# Aggregate all tools
TOOLS = CLONE_TOOLS + REMOTE_TOOLS

__all__ = [
    # Metadata
    'MODULE_NAME',
    'MODULE_VERSION',
    # Clone
    'git_clone',
    # Remote
    'git_fetch',
    'git_fetch_pull_requests',
    'git_push',
    'git_pull',
    'git_remote_ls',
    # Helpers
    'askpass',
    'CredentialHelperProvider',
    'force_refspec',
    'mirror_refspecs',
    'resolve_remote_name',
    # Tool list
    'TOOLS',
]
