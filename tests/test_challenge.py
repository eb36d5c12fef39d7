"""Tests for the http-01 ChallengeCoordinator."""

import josepy as jose
import pytest
from acme import challenges

from certsnek.account import AccountManager
from certsnek.challenge import (
    Challenge,
    ChallengeCoordinator,
    ChallengeStatus,
    RetryPolicy,
    key_authorization,
)
from certsnek.errors import (
    ChallengeFailedError,
    ChallengeTimeoutError,
    ErrorKind,
    NoChallengeError,
    TransportError,
    ValidationError,
)
from certsnek.transport import ChallengeUpdate

from tests.conftest import FakeResponder

DOMAIN = "example.test"
PATH = "/.well-known/acme-challenge/token-example.test"


@pytest.fixture()
def account(store, authority):
    account = AccountManager(store, authority).get_account("https://acme.test/directory")
    authority.calls.clear()
    return account


@pytest.fixture()
def coordinator(responder, policy):
    return ChallengeCoordinator(responder, policy=policy, port=8080)


# ---------------------------------------------------------------------------
# Successful validation
# ---------------------------------------------------------------------------


def test_valid_challenge(coordinator, account, authority, responder, sleeper):
    result = coordinator.validate(account, DOMAIN)

    assert result.ok
    assert result.domain == DOMAIN
    assert authority.challenges[0].update_calls == 2
    assert sleeper.calls == [3.0]
    assert responder.port == 8080


def test_response_is_published_before_trigger(account, authority, policy):
    responder = FakeResponder(events=authority.calls)
    published = {}

    coordinator = ChallengeCoordinator(responder, policy=policy)
    real_authorize = account.session.authorize_domain

    def authorize(domain):
        authorization = real_authorize(domain)
        handle = authorization.challenges[0]
        trigger = handle.trigger

        def checked_trigger():
            published.update(responder.responses)
            trigger()

        handle.trigger = checked_trigger
        return authorization

    account.session.authorize_domain = authorize
    assert coordinator.validate(account, DOMAIN).ok

    assert published == {PATH: key_authorization("token-example.test", account.key)}
    assert authority.calls[:4] == ["authorize", "register_path", "listen", "trigger"]
    assert authority.calls[-2:] == ["unregister_path", "stop"]


def test_key_authorization_matches_acme_library(account):
    chall = challenges.HTTP01(token=b"\x01" * 32)
    token = chall.encode("token")

    assert key_authorization(token, account.key) == chall.key_authorization(jose.JWKRSA(key=account.key))


def test_retry_after_is_honoured(coordinator, account, authority, sleeper):
    authority.challenge_updates = [
        ChallengeUpdate("pending", retry_after=7.5),
        ChallengeUpdate("processing"),
        ChallengeUpdate("valid"),
    ]

    assert coordinator.validate(account, DOMAIN).ok
    assert sleeper.calls == [7.5, 3.0]


def test_transient_update_failure_consumes_an_attempt(coordinator, account, authority, sleeper):
    authority.challenge_updates = [TransportError("badNonce"), ChallengeUpdate("valid")]

    assert coordinator.validate(account, DOMAIN).ok
    assert authority.challenges[0].update_calls == 2
    assert sleeper.calls == [3.0]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def test_first_invalid_status_fails(coordinator, account, authority):
    authority.challenge_updates = [
        ChallengeUpdate("processing"),
        ChallengeUpdate("invalid", error="key authorization did not match"),
        ChallengeUpdate("valid"),
    ]

    result = coordinator.validate(account, DOMAIN)

    assert isinstance(result.error, ChallengeFailedError)
    assert result.error.kind is ErrorKind.VALIDATION
    assert result.error.status == "invalid"
    assert result.error.detail == "key authorization did not match"
    assert authority.challenges[0].update_calls == 2


def test_polling_stops_after_twenty_queries(coordinator, account, authority, sleeper):
    authority.challenge_updates = [ChallengeUpdate("pending", error="still waiting")]

    result = coordinator.validate(account, DOMAIN)

    assert isinstance(result.error, ChallengeTimeoutError)
    assert result.error.status == "pending"
    assert result.error.detail == "still waiting"
    assert authority.challenges[0].update_calls == 20
    assert len(sleeper.calls) == 19


def test_attempt_budget_is_configurable(account, authority, responder, sleeper):
    authority.challenge_updates = [ChallengeUpdate("processing")]
    coordinator = ChallengeCoordinator(responder, policy=RetryPolicy(max_attempts=3, sleep=sleeper))

    assert isinstance(coordinator.validate(account, DOMAIN).error, ChallengeTimeoutError)
    assert authority.challenges[0].update_calls == 3


def test_no_http01_challenge(coordinator, account, authority, responder):
    authority.offer_http01 = False

    result = coordinator.validate(account, DOMAIN)

    assert isinstance(result.error, NoChallengeError)
    assert responder.listen_calls == 0
    assert not responder.listening


def test_authorization_failure(coordinator, account, authority, responder):
    authority.authorize_error = TransportError("rejectedIdentifier")

    result = coordinator.validate(account, DOMAIN)

    assert isinstance(result.error, ValidationError)
    assert "rejectedIdentifier" in result.error.detail
    assert not responder.listening


# ---------------------------------------------------------------------------
# Teardown on every exit path
# ---------------------------------------------------------------------------


def _fail_listen(authority, responder):
    responder.fail_listen = True


def _fail_trigger(authority, responder):
    authority.fail_trigger = True


def _fail_invalid(authority, responder):
    authority.challenge_updates = [ChallengeUpdate("invalid")]


def _fail_timeout(authority, responder):
    authority.challenge_updates = [ChallengeUpdate("processing")]


@pytest.mark.parametrize(
    "inject",
    [_fail_listen, _fail_trigger, _fail_invalid, _fail_timeout],
    ids=["publish", "trigger", "invalid", "timeout"],
)
def test_responder_is_torn_down_on_failure(coordinator, account, authority, responder, inject):
    inject(authority, responder)

    result = coordinator.validate(account, DOMAIN)

    assert not result.ok
    assert responder.stop_calls == 1
    assert not responder.listening
    assert responder.responses == {}


def test_responder_is_torn_down_on_unexpected_error(coordinator, account, authority, responder):
    authority.challenge_updates = [RuntimeError("boom")]

    with pytest.raises(RuntimeError):
        coordinator.validate(account, DOMAIN)

    assert responder.stop_calls == 1
    assert not responder.listening
    assert responder.responses == {}


def test_responder_is_stopped_once_on_success(coordinator, account, responder):
    assert coordinator.validate(account, DOMAIN).ok

    assert responder.stop_calls == 1
    assert not responder.listening


# ---------------------------------------------------------------------------
# Challenge state
# ---------------------------------------------------------------------------


class TestChallengeState:
    def test_forward_transitions(self):
        challenge = Challenge(token="t", expected_response="t.x")

        assert challenge.advance(ChallengeStatus.PROCESSING)
        assert challenge.advance(ChallengeStatus.VALID)
        assert challenge.status is ChallengeStatus.VALID

    def test_backward_transition_is_ignored(self):
        challenge = Challenge(token="t", expected_response="t.x", status=ChallengeStatus.PROCESSING)

        assert not challenge.advance(ChallengeStatus.PENDING)
        assert challenge.status is ChallengeStatus.PROCESSING

    def test_terminal_state_is_final(self):
        challenge = Challenge(token="t", expected_response="t.x", status=ChallengeStatus.INVALID)

        assert not challenge.advance(ChallengeStatus.VALID)
        assert challenge.status is ChallengeStatus.INVALID

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("valid", ChallengeStatus.VALID),
            ("INVALID", ChallengeStatus.INVALID),
            ("processing", ChallengeStatus.PROCESSING),
            ("deactivated", ChallengeStatus.INVALID),
            ("ready", ChallengeStatus.PENDING),
            ("", ChallengeStatus.PENDING),
        ],
    )
    def test_parse(self, value, expected):
        assert ChallengeStatus.parse(value) is expected
