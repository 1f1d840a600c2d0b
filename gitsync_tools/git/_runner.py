"""
Git command runner.

Runs the git executable for the parts of the workflow that libgit2 does not
cover: the credential helper protocol and rebasing. Output is scrubbed of
configured secrets before it is returned.
"""

import os
import subprocess
from typing import Mapping, Optional, Tuple

from gitsync_core.config import get_config


def mask_secrets(text: str) -> str:
    """Remove any configured token or password from output to avoid leaking secrets."""
    config = get_config()
    for secret in (config.github_pat, config.git_password):
        if secret and secret in text:
            text = text.replace(secret, '***')
    return text


def run_git(
    *args: str,
    cwd: Optional[str] = None,
    input_text: Optional[str] = None,
    env_overrides: Optional[Mapping[str, str]] = None,
    mask: bool = True,
) -> Tuple[bool, str, str]:
    """
    Run a git command and return (success, stdout, stderr).

    Args:
        *args: Git command arguments (e.g., 'rebase', 'origin/main')
        cwd: Working directory (default: current directory)
        input_text: Text written to the command's stdin
        env_overrides: Extra environment variables for the command
        mask: Scrub configured secrets from the output

    Returns:
        Tuple of (success: bool, stdout: str, stderr: str)
    """
    cmd = ['git'] + list(args)

    env = os.environ.copy()
    if env_overrides:
        env.update(env_overrides)

    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=get_config().git_timeout,
            env=env
        )
    except subprocess.TimeoutExpired:
        return False, "", f"Command timed out after {get_config().git_timeout} seconds"
    except FileNotFoundError:
        return False, "", "Git is not installed or not in PATH"

    stdout, stderr = result.stdout, result.stderr
    if mask:
        stdout = mask_secrets(stdout)
        stderr = mask_secrets(stderr)

    return result.returncode == 0, stdout, stderr
