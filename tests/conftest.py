from pathlib import Path

import pygit2
import pytest

from gitsync_core.config import GitSyncConfig
from gitsync_core.negotiator import HostHints
from gitsync_tools.git.credential import askpass

SIGNATURE = pygit2.Signature("Test User", "test@example.com")


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep every test away from the user's credentials, agent and tty."""
    for name in (
        "GITHUB_PAT",
        "GITHUB_TOKEN",
        "GITSYNC_USERNAME",
        "GITSYNC_PASSWORD",
        "GITSYNC_SSH_KEY",
        "GITSYNC_SSH_PASSPHRASE",
        "GITSYNC_MIRROR_EXCLUDE",
        "GITSYNC_DEFAULT_REMOTE",
        "SSH_AUTH_SOCK",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GITSYNC_INTERACTIVE", "false")
    monkeypatch.setenv("GITSYNC_CREDENTIAL_HELPER", "false")
    monkeypatch.setenv("GITSYNC_SSH_DIR", str(tmp_path / "no-ssh"))
    monkeypatch.chdir(tmp_path)

    GitSyncConfig.reset()
    HostHints.reset()
    askpass.reset()
    yield
    GitSyncConfig.reset()
    HostHints.reset()
    askpass.reset()


def commit_file(repo: pygit2.Repository, name: str, content: str, message: str = "") -> pygit2.Oid:
    """Write a file into the work tree and commit it on the current branch."""
    (Path(repo.workdir) / name).write_text(content)
    repo.index.add(name)
    repo.index.write()
    tree = repo.index.write_tree()
    parents = [] if repo.head_is_unborn else [repo.head.target]
    return repo.create_commit(
        "HEAD", SIGNATURE, SIGNATURE, message or f"Add {name}", tree, parents
    )


def init_repo(path: Path, bare: bool = False) -> pygit2.Repository:
    repo = pygit2.init_repository(str(path), bare=bare, initial_head="main")
    repo.config["user.name"] = SIGNATURE.name
    repo.config["user.email"] = SIGNATURE.email
    return repo


@pytest.fixture
def bare_remote(tmp_path) -> pygit2.Repository:
    return init_repo(tmp_path / "remote.git", bare=True)


@pytest.fixture
def work_repo(tmp_path, bare_remote) -> pygit2.Repository:
    """A repository with one commit on main and an 'origin' remote that tracks nothing yet."""
    repo = init_repo(tmp_path / "work")
    commit_file(repo, "README.md", "hello\n", "Initial commit")
    repo.remotes.create("origin", bare_remote.path)
    return repo
