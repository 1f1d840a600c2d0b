"""Repository and remote metadata read through pygit2."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import pygit2

from .errors import RepositoryNotFound, bail_if, native_call


@dataclass(frozen=True)
class RemoteSpec:
    """A configured remote."""

    name: str
    url: str
    push_url: str | None = None
    fetch_refspecs: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RepoInfo:
    """Branch state of a repository.

    ``remote`` and ``upstream`` are None when the current branch tracks nothing.
    """

    path: str
    bare: bool
    head: str | None
    shorthand: str
    upstream: str | None
    remote: str | None
    reflist: list[str] = field(default_factory=list)

    @property
    def detached(self) -> bool:
        return self.shorthand == "HEAD"


def open_repo(repo: str | os.PathLike | pygit2.Repository = ".") -> pygit2.Repository:
    """Open the repository at or above ``repo``; an open Repository passes through."""
    if isinstance(repo, pygit2.Repository):
        return repo
    path = os.fspath(Path(repo).expanduser())
    try:
        found = pygit2.discover_repository(path)
    except KeyError:
        found = None
    if found is None:
        raise RepositoryNotFound(path)
    return bail_if(native_call(pygit2.Repository, found), "git_repository_open")


def repo_path(repo: pygit2.Repository) -> str:
    """Working directory, or the git dir of a bare repository."""
    path = repo.workdir or repo.path
    return os.path.normpath(path)


def remote_names(repo: pygit2.Repository) -> list[str]:
    return [remote.name for remote in repo.remotes]


def get_remote(repo: pygit2.Repository, name: str) -> RemoteSpec:
    remote = bail_if(native_call(repo.remotes.__getitem__, name), f"git_remote_lookup '{name}'")
    return RemoteSpec(
        name=remote.name,
        url=remote.url,
        push_url=remote.push_url,
        fetch_refspecs=list(remote.fetch_refspecs),
    )


def _tracking(repo: pygit2.Repository, branch_name: str) -> tuple[str | None, str | None]:
    branch = repo.branches.local.get(branch_name)
    if branch is None:
        return None, None
    config = repo.config
    remote_key = f"branch.{branch_name}.remote"
    merge_key = f"branch.{branch_name}.merge"
    if remote_key not in config or merge_key not in config:
        return None, None
    remote = config[remote_key]
    merge = config[merge_key]
    if remote == ".":
        return merge.removeprefix("refs/heads/"), None
    return f"{remote}/{merge.removeprefix('refs/heads/')}", remote


def repo_info(repo: pygit2.Repository) -> RepoInfo:
    """Current branch, its upstream and the list of local references."""
    head = None
    shorthand = "HEAD"
    if repo.head_is_unborn:
        target = repo.references["HEAD"].target
        head = target if isinstance(target, str) else None
        shorthand = head.removeprefix("refs/heads/") if head else "HEAD"
    elif not repo.head_is_detached:
        head = repo.head.name
        shorthand = repo.head.shorthand

    upstream, remote = (None, None)
    if shorthand != "HEAD":
        upstream, remote = _tracking(repo, shorthand)

    return RepoInfo(
        path=repo_path(repo),
        bare=repo.is_bare,
        head=head,
        shorthand=shorthand,
        upstream=upstream,
        remote=remote,
        reflist=sorted(ref for ref in repo.references if ref != "HEAD"),
    )


def branch_exists(repo: pygit2.Repository, name: str, local: bool = True) -> bool:
    branches = repo.branches.local if local else repo.branches.remote
    return name in branches


def set_upstream(repo: pygit2.Repository, branch: str, upstream: str) -> None:
    """Make ``branch`` track ``<remote>/<name>``."""
    remote, _, name = upstream.partition("/")
    repo.config[f"branch.{branch}.remote"] = remote
    repo.config[f"branch.{branch}.merge"] = f"refs/heads/{name}"
