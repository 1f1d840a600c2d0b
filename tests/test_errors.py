import logging

import pygit2
import pytest

from gitsync_core.errors import (
    GIT_EAUTH,
    GIT_EEXISTS,
    GIT_ENONFASTFORWARD,
    GIT_ENOTFOUND,
    GIT_ERROR,
    AuthenticationExhausted,
    GitSyncWarning,
    NativeFailure,
    NativeResult,
    NativeTransportError,
    bail_if,
    bail_if_null,
    classify_domain,
    failure_from_exception,
    native_call,
    warn_last_msg,
)


def fail_with(exc):
    def fn(*args, **kwargs):
        raise exc
    return fn


class TestNativeCall:
    def test_success(self):
        result = native_call(lambda a, b: a + b, 1, b=2)
        assert result.ok
        assert result.value == 3

    def test_captures_git_error_at_call_site(self):
        result = native_call(fail_with(pygit2.GitError("failed to resolve address for nohost")))
        assert not result.ok
        assert result.failure.code == GIT_ERROR
        assert result.failure.domain == "net"
        assert "nohost" in result.failure.message

    def test_key_error_is_not_found(self):
        result = native_call(fail_with(KeyError("remote 'upstream' does not exist")))
        assert result.failure.code == GIT_ENOTFOUND
        assert result.failure.message == "remote 'upstream' does not exist"

    def test_already_exists(self):
        result = native_call(fail_with(pygit2.AlreadyExistsError("reference exists")))
        assert result.failure.code == GIT_EEXISTS

    def test_own_errors_propagate(self):
        with pytest.raises(AuthenticationExhausted):
            native_call(fail_with(AuthenticationExhausted("github.com", 2, ["token"])))

    def test_unrelated_errors_propagate(self):
        with pytest.raises(ZeroDivisionError):
            native_call(lambda: 1 / 0)


class TestBailIf:
    def test_returns_value(self):
        assert bail_if(NativeResult(value=42), "git_thing") == 42

    def test_raises_with_context_and_phase(self):
        result = native_call(fail_with(pygit2.GitError("too many redirects or authentication replays")))
        with pytest.raises(NativeTransportError) as exc_info:
            bail_if(result, "git_fetch", phase="negotiate")
        error = exc_info.value
        assert error.code == GIT_EAUTH
        assert error.domain == "http"
        assert error.context == "git_fetch"
        assert error.phase == "negotiate"
        assert error.message == "too many redirects or authentication replays"
        assert error.is_auth_failure
        assert isinstance(error.__cause__, pygit2.GitError)

    def test_null_value(self):
        with pytest.raises(NativeTransportError) as exc_info:
            bail_if_null(NativeResult(value=None), "git_reference_lookup")
        assert exc_info.value.code == GIT_ENOTFOUND

    def test_null_plain_value(self):
        assert bail_if_null("x", "lookup") == "x"
        with pytest.raises(NativeTransportError):
            bail_if_null(None, "lookup")


class TestWarnLastMsg:
    def test_warns_and_logs(self, caplog):
        failure = NativeFailure(GIT_ERROR, "checkout", "path is locked")
        with caplog.at_level(logging.WARNING, logger="transport"):
            with pytest.warns(GitSyncWarning, match="path is locked"):
                warn_last_msg(failure, "checkout")
        assert "checkout: libgit2 warning: path is locked (checkout)" in caplog.text

    def test_nothing_to_report(self, recwarn):
        warn_last_msg(None)
        warn_last_msg(NativeResult(value=1))
        assert len(recwarn) == 0


@pytest.mark.parametrize(
    "message, domain",
    [
        ("Failed to authenticate SSH session: publickey", "ssh"),
        ("unexpected http status code: 404", "http"),
        ("failed to connect to github.com: Connection refused", "net"),
        ("1 conflict prevents checkout", "checkout"),
        ("cannot push non-fastforwardable reference", "reference"),
        ("could not find repository at '/tmp/x'", "repository"),
        ("something odd", "invalid"),
    ],
)
def test_classify_domain(message, domain):
    assert classify_domain(message) == domain


def test_non_fast_forward_code():
    failure = failure_from_exception(pygit2.GitError("cannot push non-fastforwardable reference"))
    assert failure.code == GIT_ENONFASTFORWARD


def test_os_errors_have_os_domain():
    failure = failure_from_exception(PermissionError("denied"))
    assert failure.domain == "os"
