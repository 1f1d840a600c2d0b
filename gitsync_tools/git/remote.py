"""
Git remote operations - fetch, push, pull, ls-remote.

Each operation validates its arguments, picks the remote, and hands the
network exchange to a TransportSession with a CredentialNegotiator for the
remote's host. Operations return the repository path and raise GitSyncError
subclasses on failure.
"""

from __future__ import annotations

import os
import re
from typing import Any, Callable, Iterable, Optional, Union

import pygit2
from pygit2.enums import MergeAnalysis

from gitsync_core.askpass import PasswordProvider, make_password_provider
from gitsync_core.config import get_config
from gitsync_core.errors import (
    DetachedHead,
    GitSyncError,
    MergeConflict,
    NoRemoteConfigured,
    NoUpstreamConfigured,
    OverwriteNotifier,
    RebaseConflict,
    UpstreamMissingAfterFetch,
    bail_if,
    native_call,
)
from gitsync_core.hosts import ResolvedHost, remote_to_host
from gitsync_core.keys import KeyLocator, SSHKey
from gitsync_core.negotiator import CredentialNegotiator
from gitsync_core.repository import (
    RepoInfo,
    branch_exists,
    open_repo,
    remote_names,
    repo_info,
    repo_path,
)
from gitsync_core.session import Operation, TransportOptions, TransportSession
from logging_config import get_logger

from ._runner import run_git
from .credential import askpass

logger = get_logger("git")

Password = Union[str, PasswordProvider, Callable[..., Optional[str]], None]
Repo = Union[str, os.PathLike, pygit2.Repository]

_PR_UPSTREAM = re.compile(r".*/pr/(\d+)$")


def force_refspec(refspec: str) -> str:
    """Prefix a refspec with '+' unless it already has one."""
    return re.sub(r"^\+?", "+", refspec, count=1)


def mirror_refspecs(reflist: Iterable[str], exclude: Optional[Iterable[str]] = None) -> list[str]:
    """Map every reference onto itself, leaving out refs matching ``exclude``."""
    patterns = [re.compile(p) for p in (get_config().mirror_exclude if exclude is None else exclude)]
    return [
        f"{ref}:{ref}"
        for ref in reflist
        if not any(p.search(ref) for p in patterns)
    ]


def resolve_remote_name(
    repo: pygit2.Repository,
    remote: Optional[str],
    info: RepoInfo,
    notify: bool = True,
) -> str:
    """
    Pick the remote to talk to.

    A named remote wins, then the remote the current branch tracks, then the
    default remote ('origin') when it exists.

    Raises:
        NoRemoteConfigured: If none of those is available
    """
    if remote:
        return remote
    if info.remote:
        return info.remote
    default = get_config().default_remote
    if default in remote_names(repo):
        if notify:
            logger.info(f"No remote set for this branch, using default remote '{default}'")
        return default
    raise NoRemoteConfigured()


def _as_list(refspec: Union[str, Iterable[str], None]) -> list[str]:
    if refspec is None:
        return []
    if isinstance(refspec, str):
        return [refspec]
    return [str(r) for r in refspec]


def _verbose(verbose: Optional[bool]) -> bool:
    return get_config().interactive if verbose is None else bool(verbose)


def make_negotiator(
    host: ResolvedHost,
    password: Password = askpass,
    ssh_key: Union[str, os.PathLike, SSHKey, None] = None,
    verbose: bool = False,
    key_locator: Optional[KeyLocator] = None,
) -> CredentialNegotiator:
    """Negotiator for ``host`` configured from the arguments and GitSyncConfig."""
    config = get_config()
    return CredentialNegotiator(
        host,
        key_locator=key_locator or KeyLocator(ssh_dir=config.ssh_dir),
        password=make_password_provider(password),
        ssh_key=ssh_key or config.ssh_key_path or None,
        token=config.github_pat or None,
        token_username=config.token_username,
        verbose=verbose,
    )


def git_fetch(
    remote: Optional[str] = None,
    refspec: Union[str, Iterable[str], None] = None,
    password: Password = askpass,
    ssh_key: Union[str, os.PathLike, SSHKey, None] = None,
    prune: bool = False,
    verbose: Optional[bool] = None,
    repo: Repo = '.',
) -> str:
    """
    Fetch refs from a remote.

    Args:
        remote: Remote name (default: the tracked remote, then 'origin')
        refspec: Refspec(s) to fetch (default: the remote's configured refspecs)
        password: Secret string or callback for passwords and passphrases
        ssh_key: Path or SSHKeyMaterial; disables SSH key discovery
        prune: Remove remote-tracking refs that no longer exist upstream
        verbose: Report authentication and transfer progress
        repo: Repository path or open repository

    Returns:
        Path of the repository
    """
    repo = open_repo(repo)
    info = repo_info(repo)
    name = resolve_remote_name(repo, remote, info)
    verbose = _verbose(verbose)

    host = remote_to_host(repo, name)
    session = TransportSession(
        make_negotiator(host, password, ssh_key, verbose),
        TransportOptions(prune=bool(prune), verbose=verbose),
    )
    session.run(Operation.FETCH, repo=repo, remote=name, refspecs=_as_list(refspec))
    return repo_path(repo)


def git_remote_ls(
    remote: Optional[str] = None,
    password: Password = askpass,
    ssh_key: Union[str, os.PathLike, SSHKey, None] = None,
    verbose: Optional[bool] = None,
    repo: Repo = '.',
) -> list[dict[str, Any]]:
    """
    List the references a remote advertises.

    Returns:
        list of dicts with 'ref', 'id' and 'symref'
    """
    repo = open_repo(repo)
    info = repo_info(repo)
    name = resolve_remote_name(repo, remote, info)
    verbose = _verbose(verbose)

    host = remote_to_host(repo, name)
    session = TransportSession(
        make_negotiator(host, password, ssh_key, verbose),
        TransportOptions(verbose=verbose),
    )
    outcome = session.run(Operation.LS_REMOTE, repo=repo, remote=name)
    return outcome.heads


def git_push(
    remote: Optional[str] = None,
    refspec: Union[str, Iterable[str], None] = None,
    set_upstream: Optional[bool] = None,
    password: Password = askpass,
    ssh_key: Union[str, os.PathLike, SSHKey, None] = None,
    mirror: bool = False,
    force: bool = False,
    verbose: Optional[bool] = None,
    repo: Repo = '.',
) -> str:
    """
    Push refs to a remote.

    Args:
        remote: Remote name (default: the tracked remote, then 'origin')
        refspec: Refspec(s) to push (default: the current branch)
        set_upstream: Make the current branch track the pushed branch. None
            does so only when the branch has no upstream yet and the
            repository is not bare.
        mirror: Push every local ref to the same name, except refs matching
            the configured mirror exclusions (hosting pull-request refs)
        force: Prefix every refspec with '+'

    Returns:
        Path of the repository
    """
    repo = open_repo(repo)
    info = repo_info(repo)
    verbose = _verbose(verbose)
    name = resolve_remote_name(repo, remote, info, notify=verbose)

    if mirror:
        refspecs = mirror_refspecs(info.reflist)
    else:
        refspecs = _as_list(refspec)
    if not refspecs:
        if info.head is None:
            raise DetachedHead("Cannot push a detached HEAD without a refspec")
        refspecs = [info.head]
    if force:
        refspecs = [force_refspec(r) for r in refspecs]

    if set_upstream is None:
        set_upstream = info.upstream is None and not info.bare
    upstream = None
    if set_upstream and not info.detached:
        upstream = (info.shorthand, f"{name}/{info.shorthand}")

    host = remote_to_host(repo, name)
    session = TransportSession(
        make_negotiator(host, password, ssh_key, verbose),
        TransportOptions(set_upstream=upstream, verbose=verbose),
    )
    session.run(Operation.PUSH, repo=repo, remote=name, refspecs=refspecs)
    return repo_path(repo)


def git_fetch_pull_requests(
    pr: Union[str, int] = "*",
    remote: Optional[str] = None,
    repo: Repo = '.',
    **kwargs: Any,
) -> str:
    """Fetch pull request heads into refs/remotes/<remote>/pr/<pr>."""
    repo = open_repo(repo)
    name = resolve_remote_name(repo, remote, repo_info(repo))
    refspec = f"+refs/pull/{pr}/head:refs/remotes/{name}/pr/{pr}"
    return git_fetch(name, refspec=refspec, repo=repo, **kwargs)


def _rebase(repo: pygit2.Repository, upstream: str) -> None:
    success, _, stderr = run_git('rebase', upstream, cwd=repo.workdir)
    if not success:
        run_git('rebase', '--abort', cwd=repo.workdir)
        raise RebaseConflict(upstream, stderr.strip())


def _merge(repo: pygit2.Repository, info: RepoInfo, upstream: str, local: bool) -> None:
    branches = repo.branches.local if local else repo.branches.remote
    target = branches[upstream].target
    analysis, _ = repo.merge_analysis(target)

    if analysis & MergeAnalysis.UP_TO_DATE:
        logger.info(f"Already up to date with {upstream}")
        return

    notifier = OverwriteNotifier()
    if analysis & (MergeAnalysis.FASTFORWARD | MergeAnalysis.UNBORN):
        bail_if(
            native_call(repo.checkout_tree, repo[target], callbacks=notifier),
            "git_checkout_tree",
        )
        repo.references.create(info.head, target, force=True)
        logger.info(f"Fast-forwarded {info.shorthand} to {upstream}")
        return

    bail_if(native_call(repo.merge, target), "git_merge")
    if repo.index.conflicts is not None:
        paths = sorted({
            entry.path
            for conflict in repo.index.conflicts
            for entry in conflict
            if entry is not None
        })
        raise MergeConflict(upstream, paths)

    tree = repo.index.write_tree()
    signature = bail_if(native_call(lambda: repo.default_signature), "git_signature_default")
    repo.create_commit(
        'HEAD', signature, signature, f"Merge {upstream} into {info.shorthand}",
        tree, [repo.head.target, target],
    )
    repo.state_cleanup()
    logger.info(f"Merged {upstream} into {info.shorthand}")


def git_pull(
    remote: Optional[str] = None,
    rebase: bool = False,
    repo: Repo = '.',
    **kwargs: Any,
) -> str:
    """
    Fetch the upstream of the current branch and integrate it.

    Args:
        remote: Remote name; the upstream becomes <remote>/<branch>
        rebase: Rebase local commits instead of merging
        **kwargs: Passed on to git_fetch (password, ssh_key, prune, verbose)

    Returns:
        Path of the repository
    """
    repo = open_repo(repo)
    info = repo_info(repo)
    if info.detached:
        raise DetachedHead()

    upstream = f"{remote}/{info.shorthand}" if remote else info.upstream
    if not upstream:
        raise NoUpstreamConfigured()

    match = _PR_UPSTREAM.match(upstream)
    if match:
        try:
            git_fetch_pull_requests(pr=match.group(1), remote=remote, repo=repo, **kwargs)
        except GitSyncError as e:
            logger.warning(f"Could not fetch pull request {match.group(1)}: {e}")

    local = branch_exists(repo, upstream, local=True)
    if local:
        logger.info("Local upstream, skipping fetch")
    else:
        git_fetch(remote, repo=repo, **kwargs)
        if not branch_exists(repo, upstream, local=False):
            raise UpstreamMissingAfterFetch(upstream)

    if rebase:
        _rebase(repo, upstream)
    else:
        _merge(repo, repo_info(repo), upstream, local)
    return repo_path(repo)


def _tool(fn: Callable[..., Any], done: str) -> Callable[..., dict]:
    """Adapt an operation to the tool calling convention."""
    def run(**kwargs: Any) -> dict:
        try:
            result = fn(**kwargs)
        except GitSyncError as e:
            return {'success': False, 'message': str(e)}
        return {'success': True, 'message': done, 'result': result}
    run.__name__ = fn.__name__
    run.__doc__ = fn.__doc__
    return run


# Tool definitions
TOOLS = [
    {
        "name": "git_fetch",
        "description": "Fetch refs from a remote. Authentication is negotiated automatically.",
        "parameters": {
            "type": "object",
            "properties": {
                "remote": {
                    "type": "string",
                    "description": "Remote name (default: tracked remote, then origin)"
                },
                "refspec": {
                    "type": "string",
                    "description": "Refspec to fetch (default: remote's refspecs)"
                },
                "prune": {
                    "type": "boolean",
                    "description": "Remove deleted remote branches"
                },
                "repo": {
                    "type": "string",
                    "description": "Repository directory path"
                }
            },
            "required": []
        },
        "function": _tool(git_fetch, "Fetch complete")
    },
    {
        "name": "git_push",
        "description": "Push refs to a remote. Authentication is negotiated automatically.",
        "parameters": {
            "type": "object",
            "properties": {
                "remote": {
                    "type": "string",
                    "description": "Remote name (default: tracked remote, then origin)"
                },
                "refspec": {
                    "type": "string",
                    "description": "Refspec to push (default: current branch)"
                },
                "set_upstream": {
                    "type": "boolean",
                    "description": "Set upstream tracking (default: only if none is set)"
                },
                "mirror": {
                    "type": "boolean",
                    "description": "Push all refs, except pull request refs"
                },
                "force": {
                    "type": "boolean",
                    "description": "Force push (use with caution!)"
                },
                "repo": {
                    "type": "string",
                    "description": "Repository directory path"
                }
            },
            "required": []
        },
        "function": _tool(git_push, "Push complete")
    },
    {
        "name": "git_pull",
        "description": "Fetch the upstream of the current branch and merge or rebase onto it.",
        "parameters": {
            "type": "object",
            "properties": {
                "remote": {
                    "type": "string",
                    "description": "Remote name (default: branch upstream)"
                },
                "rebase": {
                    "type": "boolean",
                    "description": "Rebase instead of merge (default: false)"
                },
                "repo": {
                    "type": "string",
                    "description": "Repository directory path"
                }
            },
            "required": []
        },
        "function": _tool(git_pull, "Pull complete")
    },
    {
        "name": "git_remote_ls",
        "description": "List the references a remote advertises.",
        "parameters": {
            "type": "object",
            "properties": {
                "remote": {
                    "type": "string",
                    "description": "Remote name (default: tracked remote, then origin)"
                },
                "repo": {
                    "type": "string",
                    "description": "Repository directory path"
                }
            },
            "required": []
        },
        "function": _tool(git_remote_ls, "Listed remote refs")
    },
]
