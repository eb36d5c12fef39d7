"""
ACME transport for certsnek.

The issuance core talks to the certificate authority only through the
small interface defined here (sessions, authorizations, challenges and
orders). AcmeTransport implements it on top of the ``acme`` client library;
tests substitute an in-memory authority.
"""

import datetime
import email.utils
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import josepy as jose
import requests
from acme import client, messages
from acme import errors as acme_errors
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import RegistrationConflict, TransportError

logger = logging.getLogger(__name__)

HTTP01 = "http-01"

USER_AGENT = "certsnek"

# Everything the acme client can raise for a failed request
_ACME_FAILURES = (
    acme_errors.Error,
    jose.Error,
    requests.exceptions.RequestException,
    ValueError,
)


@dataclass
class ChallengeUpdate:
    """Result of one challenge status query."""

    status: str
    retry_after: Optional[float] = None
    error: Optional[str] = None


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Convert a Retry-After header into a delay in seconds.

    The header holds either a number of seconds or an HTTP-date. Dates are
    compared against the current UTC time. Returns None for a missing or
    unparsable header.
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparsable Retry-After header {value!r}")
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=datetime.timezone.utc)
    now = datetime.datetime.now(datetime.timezone.utc)
    return max(0.0, (when - now).total_seconds())


class ChallengeHandle(Protocol):
    typ: str
    token: str

    def trigger(self) -> None: ...

    def update(self) -> ChallengeUpdate: ...


class CertificateOrder(Protocol):
    def download(self) -> bytes: ...


@dataclass
class Authorization:
    """An authorization for one domain and the challenges offered for it."""

    domain: str
    challenges: List[ChallengeHandle] = field(default_factory=list)

    def find_challenge(self, typ: str) -> Optional[ChallengeHandle]:
        return next((c for c in self.challenges if c.typ == typ), None)


class Session(Protocol):
    def register(self, contact: Optional[str]) -> str: ...

    def bind(self, reference: str) -> None: ...

    def authorize_domain(self, domain: str) -> Authorization: ...

    def request_certificate(self, csr_der: bytes) -> CertificateOrder: ...


class Transport(Protocol):
    def open_session(self, directory_url: str, account_key: rsa.RSAPrivateKey) -> Session: ...


class AcmeChallenge:
    """A challenge offered by an ACME v2 authority."""

    def __init__(self, acme_client: client.ClientV2, challb: messages.ChallengeBody, jwk: jose.JWK):
        self._client = acme_client
        self._challb = challb
        self._jwk = jwk
        self.typ = challb.chall.typ
        self.token = challb.chall.encode("token") if hasattr(challb.chall, "token") else ""

    def trigger(self) -> None:
        logger.debug(f"Answering {self.typ} challenge {self._challb.uri}")
        try:
            resource = self._client.answer_challenge(self._challb, self._challb.chall.response(self._jwk))
        except _ACME_FAILURES as e:
            raise TransportError(f"Could not trigger challenge: {e}") from e
        self._challb = resource.body

    def update(self) -> ChallengeUpdate:
        try:
            response = self._client.net.post(self._challb.uri, None)
            challb = messages.ChallengeBody.from_json(response.json())
        except _ACME_FAILURES as e:
            raise TransportError(f"Could not update challenge: {e}") from e

        self._challb = challb
        error = None
        if challb.error is not None:
            error = challb.error.detail or challb.error.description or str(challb.error)

        retry_after = parse_retry_after(response.headers.get("Retry-After"))

        return ChallengeUpdate(status=challb.status.name, retry_after=retry_after, error=error)


class AcmeOrder:
    """A finalized ACME v2 order whose certificate may not be ready yet."""

    def __init__(self, acme_client: client.ClientV2, orderr: messages.OrderResource):
        self._client = acme_client
        self._orderr = orderr

    def download(self) -> bytes:
        """
        Fetch the issued certificate chain.

        Raises:
            TransportError: The order is not valid yet or the request failed
        """
        try:
            response = self._client.net.post(self._orderr.uri, None)
            body = messages.Order.from_json(response.json())
        except _ACME_FAILURES as e:
            raise TransportError(f"Could not poll order: {e}") from e

        if body.error is not None:
            raise TransportError(f"Order failed: {body.error}")
        if body.status != messages.STATUS_VALID or not body.certificate:
            raise TransportError(f"Certificate not ready, order status {body.status.name}")

        try:
            certificate_response = self._client.net.post(body.certificate, None)
        except _ACME_FAILURES as e:
            raise TransportError(f"Could not download certificate: {e}") from e
        return certificate_response.text.encode("utf-8")


class AcmeSession:
    """A connection to an ACME v2 directory, signed with the account key."""

    def __init__(self, acme_client: client.ClientV2, jwk: jose.JWK):
        self._client = acme_client
        self._jwk = jwk
        self._order: Optional[messages.OrderResource] = None

    def register(self, contact: Optional[str]) -> str:
        new_reg = messages.NewRegistration.from_data(email=contact, terms_of_service_agreed=True)
        try:
            regr = self._client.new_account(new_reg)
        except acme_errors.ConflictError as e:
            raise RegistrationConflict(e.location) from e
        except _ACME_FAILURES as e:
            raise TransportError(f"Account registration failed: {e}") from e
        logger.info(f"Account registered: {regr.uri}")
        return regr.uri

    def bind(self, reference: str) -> None:
        regr = messages.RegistrationResource(uri=reference, body=messages.Registration())
        try:
            self._client.query_registration(regr)
        except _ACME_FAILURES as e:
            raise TransportError(f"Could not bind account {reference}: {e}") from e

    def authorize_domain(self, domain: str) -> Authorization:
        """Open an order for ``domain`` and return its authorization."""
        identifier = messages.Identifier(typ=messages.IDENTIFIER_FQDN, value=domain)
        try:
            response = self._client.net.post(
                self._client.directory["newOrder"],
                messages.NewOrder(identifiers=(identifier,)),
            )
            body = messages.Order.from_json(response.json())
        except _ACME_FAILURES as e:
            raise TransportError(f"Order creation failed: {e}") from e

        self._order = messages.OrderResource(body=body, uri=response.headers.get("Location"))
        logger.debug(f"Order created: {self._order.uri}")

        for url in body.authorizations:
            try:
                authz = messages.Authorization.from_json(self._client.net.post(url, None).json())
            except _ACME_FAILURES as e:
                raise TransportError(f"Authorization retrieval failed: {e}") from e
            if authz.identifier.value == domain:
                return Authorization(
                    domain=domain,
                    challenges=[AcmeChallenge(self._client, c, self._jwk) for c in authz.challenges],
                )
        raise TransportError(f"Order has no authorization for {domain}")

    def request_certificate(self, csr_der: bytes) -> AcmeOrder:
        """Finalize the open order with a DER encoded CSR."""
        if self._order is None or not self._order.uri:
            raise TransportError("No open order, authorize the domain first")

        csr_pem = x509.load_der_x509_csr(csr_der).public_bytes(serialization.Encoding.PEM)
        try:
            orderr = self._client.begin_finalization(self._order.update(csr_pem=csr_pem))
        except _ACME_FAILURES as e:
            raise TransportError(f"Order finalization failed: {e}") from e
        return AcmeOrder(self._client, orderr)


class AcmeTransport:
    """Opens AcmeSession objects against an ACME v2 directory URL."""

    def __init__(self, user_agent: str = USER_AGENT, verify_ssl: bool = True):
        self.user_agent = user_agent
        self.verify_ssl = verify_ssl

    def open_session(self, directory_url: str, account_key: rsa.RSAPrivateKey) -> AcmeSession:
        logger.debug(f"Opening session to {directory_url}")
        jwk = jose.JWKRSA(key=account_key)
        net = client.ClientNetwork(jwk, user_agent=self.user_agent, verify_ssl=self.verify_ssl)
        try:
            directory = client.ClientV2.get_directory(directory_url, net)
        except _ACME_FAILURES as e:
            raise TransportError(f"Could not fetch ACME directory {directory_url}: {e}") from e
        return AcmeSession(client.ClientV2(directory, net=net), jwk)
