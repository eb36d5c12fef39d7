"""Shared fixtures: an in-memory ACME authority and challenge responder."""

import datetime
import urllib.parse
from typing import List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from certsnek.challenge import RetryPolicy
from certsnek.errors import RegistrationConflict, ResponderError, TransportError
from certsnek.store import KeyMaterialStore
from certsnek.transport import HTTP01, Authorization, ChallengeUpdate

TEST_KEY_SIZE = 2048


def make_certificate(
    domain: str,
    days: int = 90,
    key: Optional[rsa.RSAPrivateKey] = None,
    not_before: Optional[datetime.datetime] = None,
):
    """Return a self-signed certificate for ``domain`` and its key."""
    key = key or rsa.generate_private_key(public_exponent=65537, key_size=TEST_KEY_SIZE)
    not_before = not_before or datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(minutes=5)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    cert = x509.CertificateBuilder().subject_name(
        name
    ).issuer_name(
        name
    ).public_key(
        key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        not_before
    ).not_valid_after(
        not_before + datetime.timedelta(days=days)
    ).sign(key, hashes.SHA256())
    return cert, key


class Sleeper:
    """Records requested sleeps instead of sleeping."""

    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeResponder:
    def __init__(self, fail_listen: bool = False, events: Optional[List[str]] = None):
        self.fail_listen = fail_listen
        self.events = events if events is not None else []
        self.responses = {}
        self.listening = False
        self.listen_calls = 0
        self.stop_calls = 0
        self.port = None

    def register_path(self, path, body):
        self.events.append("register_path")
        self.responses[path] = body

    def unregister_path(self, path):
        self.events.append("unregister_path")
        self.responses.pop(path, None)

    def listen(self, port):
        self.listen_calls += 1
        self.events.append("listen")
        if self.fail_listen:
            raise ResponderError(f"port {port} in use")
        self.listening = True
        self.port = port

    def stop(self):
        self.stop_calls += 1
        self.events.append("stop")
        self.listening = False


class FakeChallenge:
    typ = HTTP01

    def __init__(self, authority, token, updates, fail_trigger=False):
        self.authority = authority
        self.token = token
        self.updates = list(updates)
        self.fail_trigger = fail_trigger
        self.triggered = False
        self.update_calls = 0

    def trigger(self):
        self.authority.calls.append("trigger")
        if self.fail_trigger:
            raise TransportError("trigger rejected")
        self.triggered = True

    def update(self):
        self.authority.calls.append("update")
        self.update_calls += 1
        update = self.updates.pop(0) if len(self.updates) > 1 else self.updates[0]
        if isinstance(update, Exception):
            raise update
        return update


class FakeOrder:
    def __init__(self, authority, pem, failures):
        self.authority = authority
        self.pem = pem
        self.failures = failures
        self.download_calls = 0

    def download(self):
        self.authority.calls.append("download")
        self.download_calls += 1
        if self.download_calls <= self.failures:
            raise TransportError("Certificate not ready, order status processing")
        return self.pem


class FakeSession:
    def __init__(self, authority, url, key):
        self.authority = authority
        self.url = url
        self.key = key
        self.bound_ref = None

    @property
    def host(self):
        return urllib.parse.urlsplit(self.url).netloc

    @property
    def fingerprint(self):
        return self.key.public_key().public_numbers().n

    def register(self, contact):
        authority = self.authority
        authority.calls.append("register")
        if authority.register_error is not None:
            raise authority.register_error
        account_id = (self.host, self.fingerprint)
        if account_id in authority.accounts:
            raise RegistrationConflict(authority.accounts[account_id])
        reference = f"https://{self.host}/acct/{len(authority.accounts) + 1}"
        authority.accounts[account_id] = reference
        self.bound_ref = reference
        return reference

    def bind(self, reference):
        self.authority.calls.append("bind")
        owners = {ref: n for (host, n), ref in self.authority.accounts.items() if host == self.host}
        if reference not in owners:
            raise TransportError(f"accountDoesNotExist: {reference}")
        if owners[reference] != self.fingerprint:
            raise TransportError("unauthorized: account key does not match kid")
        self.bound_ref = reference

    def authorize_domain(self, domain):
        authority = self.authority
        authority.calls.append("authorize")
        if authority.authorize_error is not None:
            raise authority.authorize_error
        challenges = []
        if authority.offer_http01:
            challenge = FakeChallenge(
                authority, f"token-{domain}", authority.challenge_updates, authority.fail_trigger
            )
            authority.challenges.append(challenge)
            challenges.append(challenge)
        return Authorization(domain=domain, challenges=challenges)

    def request_certificate(self, csr_der):
        authority = self.authority
        authority.calls.append("request_certificate")
        if authority.submit_error is not None:
            raise authority.submit_error
        csr = x509.load_der_x509_csr(csr_der)
        authority.csrs.append(csr)
        order = FakeOrder(authority, authority.issue(csr), authority.download_failures)
        authority.orders.append(order)
        return order


class FakeAuthority:
    """Transport double that behaves like a cooperative ACME authority."""

    def __init__(self):
        self.calls: List[str] = []
        self.accounts = {}
        self.sessions: List[FakeSession] = []
        self.challenges: List[FakeChallenge] = []
        self.orders: List[FakeOrder] = []
        self.csrs = []
        self.offer_http01 = True
        self.fail_trigger = False
        self.challenge_updates = [ChallengeUpdate("processing"), ChallengeUpdate("valid")]
        self.download_failures = 1
        self.register_error = None
        self.authorize_error = None
        self.submit_error = None
        self.validity_days = 90
        self.ca_key = rsa.generate_private_key(public_exponent=65537, key_size=TEST_KEY_SIZE)

    def open_session(self, url, key):
        self.calls.append("open_session")
        session = FakeSession(self, url, key)
        self.sessions.append(session)
        return session

    def issue(self, csr) -> bytes:
        now = datetime.datetime.now(datetime.timezone.utc)
        issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Fake Test CA")])
        cert = x509.CertificateBuilder().subject_name(
            csr.subject
        ).issuer_name(
            issuer
        ).public_key(
            csr.public_key()
        ).serial_number(
            x509.random_serial_number()
        ).not_valid_before(
            now - datetime.timedelta(minutes=5)
        ).not_valid_after(
            now + datetime.timedelta(days=self.validity_days)
        ).sign(self.ca_key, hashes.SHA256())
        return cert.public_bytes(serialization.Encoding.PEM)


@pytest.fixture()
def authority():
    return FakeAuthority()


@pytest.fixture()
def responder():
    return FakeResponder()


@pytest.fixture()
def sleeper():
    return Sleeper()


@pytest.fixture()
def policy(sleeper):
    return RetryPolicy(max_attempts=20, interval=3.0, sleep=sleeper)


@pytest.fixture()
def store(tmp_path):
    return KeyMaterialStore(str(tmp_path / "certs"), key_size=TEST_KEY_SIZE)
