import logging
import os

import pytest

from gitsync_core.errors import NoRemoteConfigured
from gitsync_core.repository import repo_info
from gitsync_tools.git.clone import default_clone_path
from gitsync_tools.git.remote import force_refspec, mirror_refspecs, resolve_remote_name

from conftest import init_repo


class TestForceRefspec:
    @pytest.mark.parametrize(
        "refspec, expected",
        [
            ("refs/heads/main", "+refs/heads/main"),
            ("+refs/heads/main", "+refs/heads/main"),
            ("main:refs/heads/release", "+main:refs/heads/release"),
        ],
    )
    def test_prefix(self, refspec, expected):
        assert force_refspec(refspec) == expected

    def test_idempotent(self):
        once = force_refspec("refs/heads/main")
        assert force_refspec(once) == once


class TestMirrorRefspecs:
    REFS = ["refs/heads/main", "refs/pull/42/head", "refs/tags/v1.0"]

    def test_excludes_pull_requests_by_default(self):
        assert mirror_refspecs(self.REFS) == [
            "refs/heads/main:refs/heads/main",
            "refs/tags/v1.0:refs/tags/v1.0",
        ]

    def test_explicit_exclusions(self):
        assert mirror_refspecs(self.REFS, exclude=[r"^refs/tags/"]) == [
            "refs/heads/main:refs/heads/main",
            "refs/pull/42/head:refs/pull/42/head",
        ]

    def test_exclusions_from_environment(self, monkeypatch):
        from gitsync_core.config import GitSyncConfig

        monkeypatch.setenv("GITSYNC_MIRROR_EXCLUDE", "^refs/pull/, ^refs/tags/")
        GitSyncConfig.reset()
        assert mirror_refspecs(self.REFS) == ["refs/heads/main:refs/heads/main"]


class TestResolveRemoteName:
    def test_no_remote_at_all(self, tmp_path):
        repo = init_repo(tmp_path / "lonely")
        with pytest.raises(NoRemoteConfigured):
            resolve_remote_name(repo, None, repo_info(repo))

    def test_falls_back_to_origin_with_notice(self, work_repo, caplog):
        with caplog.at_level(logging.INFO, logger="git"):
            name = resolve_remote_name(work_repo, None, repo_info(work_repo))
        assert name == "origin"
        assert "using default remote 'origin'" in caplog.text

    def test_named_remote_wins(self, work_repo):
        assert resolve_remote_name(work_repo, "upstream", repo_info(work_repo)) == "upstream"

    def test_tracked_remote(self, work_repo):
        work_repo.remotes.create("upstream", "https://example.com/repo.git")
        work_repo.config["branch.main.remote"] = "upstream"
        work_repo.config["branch.main.merge"] = "refs/heads/main"
        info = repo_info(work_repo)
        assert info.upstream == "upstream/main"
        assert resolve_remote_name(work_repo, None, info) == "upstream"

    def test_only_non_origin_remote(self, tmp_path):
        repo = init_repo(tmp_path / "other")
        repo.remotes.create("upstream", "https://example.com/repo.git")
        with pytest.raises(NoRemoteConfigured):
            resolve_remote_name(repo, None, repo_info(repo))


@pytest.mark.parametrize(
    "url, name",
    [
        ("https://github.com/owner/repo.git", "repo"),
        ("https://github.com/owner/repo", "repo"),
        ("git@github.com:owner/repo.git", "repo"),
        ("git@github.com:repo.git", "repo"),
        ("/srv/git/project.git/", "project"),
    ],
)
def test_default_clone_path(url, name):
    assert default_clone_path(url) == os.path.join(os.getcwd(), name)
