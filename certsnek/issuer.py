"""
Per-domain certificate issuance and renewal.

One pass runs CHECK_VALIDITY -> AUTHORIZED -> SUBMITTED -> DOWNLOADED -> STORED
and stops early when the stored certificate is still good for long enough.
A failed pass is reported in the returned IssuanceResult and has to be
started again from the beginning.
"""

import enum
import datetime
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .account import AccountManager
from .challenge import ChallengeCoordinator, RetryPolicy
from .errors import (
    CertsnekError,
    DownloadTimeoutError,
    StorageError,
    SubmissionError,
    TransportError,
)
from .store import DOMAIN_PURPOSE, KeyMaterialStore
from .transport import CertificateOrder

logger = logging.getLogger(__name__)

# Certificate expiry threshold (days)
CERT_EXPIRY_THRESHOLD_DAYS = 30


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class IssuanceStatus(enum.Enum):
    ISSUED = "issued"
    STILL_VALID = "still_valid"
    FAILED = "failed"


@dataclass
class IssuanceResult:
    """Terminal outcome of one issuance pass for one domain."""

    domain: str
    status: IssuanceStatus
    error: Optional[CertsnekError] = None
    keystore_path: Optional[str] = None
    certificate: Optional[x509.Certificate] = None

    @property
    def ok(self) -> bool:
        return self.status is not IssuanceStatus.FAILED


@dataclass
class DomainRecord:
    domain: str
    organisation: str
    passphrase: str
    key: Optional[rsa.RSAPrivateKey] = None
    certificate: Optional[x509.Certificate] = None


def build_csr(domain: str, organisation: str, key: rsa.RSAPrivateKey) -> x509.CertificateSigningRequest:
    """Build a SHA-256 signed CSR for a single domain name."""
    attributes = [x509.NameAttribute(NameOID.COMMON_NAME, domain)]
    if organisation:
        attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organisation))
    return x509.CertificateSigningRequestBuilder().subject_name(
        x509.Name(attributes)
    ).add_extension(
        x509.SubjectAlternativeName([x509.DNSName(domain)]),
        critical=False,
    ).sign(key, hashes.SHA256())


class CertificateIssuer:
    """
    Issues or renews the certificate of one domain at a time.

    Args:
        store: Key material store for keys, CSRs and keystores
        accounts: Account manager of the same storage root
        coordinator: Challenge coordinator used to validate domains
        contact_email: Contact address for account registration
        download_policy: Retry policy for downloading the issued certificate
        renew_before_days: Renew certificates expiring within this many days
        clock: Returns the current time as an aware datetime
    """

    def __init__(
        self,
        store: KeyMaterialStore,
        accounts: AccountManager,
        coordinator: ChallengeCoordinator,
        contact_email: Optional[str] = None,
        download_policy: Optional[RetryPolicy] = None,
        renew_before_days: int = CERT_EXPIRY_THRESHOLD_DAYS,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.store = store
        self.accounts = accounts
        self.coordinator = coordinator
        self.contact_email = contact_email
        self.download_policy = download_policy or RetryPolicy()
        self.renew_before_days = renew_before_days
        self.clock = clock

    def is_valid(self, domain: str, passphrase: str) -> bool:
        """
        Check whether the stored certificate is valid for the renewal window.

        Anything that prevents reading the certificate counts as not valid.
        """
        try:
            cert = self.store.load_certificate(domain, passphrase)
            check = self.clock() + datetime.timedelta(days=self.renew_before_days)
            if cert.not_valid_before_utc <= check <= cert.not_valid_after_utc:
                return True
            remaining = (cert.not_valid_after_utc - self.clock()).days
            logger.info(f"Certificate for {domain} expires in {remaining} days, renewing")
        except StorageError as e:
            logger.debug(f"No usable certificate for {domain}: {e}")
        except ValueError as e:
            logger.warning(f"Error checking existing certificate for {domain}: {e}")
        return False

    def issue_or_renew(
        self,
        domain: str,
        organisation: str,
        passphrase: str,
        authority_url: str,
        force_renew: bool = False,
    ) -> IssuanceResult:
        """Run one issuance pass for ``domain``."""
        try:
            return self._issue_or_renew(domain, organisation, passphrase, authority_url, force_renew)
        except CertsnekError as e:
            logger.error(f"Certificate issuance for {domain} failed: {e}")
            return IssuanceResult(domain, IssuanceStatus.FAILED, error=e)

    def _issue_or_renew(
        self,
        domain: str,
        organisation: str,
        passphrase: str,
        authority_url: str,
        force_renew: bool,
    ) -> IssuanceResult:
        record = DomainRecord(domain=domain, organisation=organisation, passphrase=passphrase)

        if not force_renew and self.is_valid(domain, passphrase):
            logger.info(
                f"Existing certificate is still valid for at least another {self.renew_before_days} days. "
                "Not requesting new certificate."
            )
            return IssuanceResult(domain, IssuanceStatus.STILL_VALID, keystore_path=self.store.keystore_path(domain))

        account = self.accounts.get_account(authority_url, self.contact_email)

        logger.info(f"Requesting new certificate for domain name {domain}.")
        record.key = self.store.load_or_create_key(DOMAIN_PURPOSE, domain)

        logger.debug("Building certificate signing request...")
        csr = build_csr(domain, organisation, record.key)
        try:
            self.store.store_csr(domain, csr)
        except StorageError as e:
            logger.warning(f"Could not write certificate signing request: {e}")

        validation = self.coordinator.validate(account, domain)
        if not validation.ok:
            return IssuanceResult(domain, IssuanceStatus.FAILED, error=validation.error)

        try:
            logger.debug("Requesting certificate...")
            order = account.session.request_certificate(csr.public_bytes(serialization.Encoding.DER))
        except TransportError as e:
            raise SubmissionError(f"Certificate request for {domain} was rejected", str(e)) from e

        chain = self._download(order)
        record.certificate = chain[0]

        path = self.store.store_certificate(
            domain, record.certificate, passphrase, key=record.key, chain=chain[1:]
        )
        logger.info(f"Requesting new certificate finished successfully. Certificate stored in {path}.")
        return IssuanceResult(
            domain, IssuanceStatus.ISSUED, keystore_path=path, certificate=record.certificate
        )

    def _download(self, order: CertificateOrder) -> List[x509.Certificate]:
        """Download the issued chain, retrying while the authority processes the order."""
        logger.debug("Downloading certificate...")
        policy = self.download_policy
        last_error: Optional[Exception] = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                chain = x509.load_pem_x509_certificates(order.download())
                logger.debug("Downloading certificate finished")
                return chain
            except (TransportError, ValueError) as e:
                last_error = e
                logger.debug(f"Downloading certificate failed ({attempt}/{policy.max_attempts}): {e}")
            if attempt < policy.max_attempts:
                policy.sleep(policy.interval)

        raise DownloadTimeoutError(
            f"Downloading certificate failed after {policy.max_attempts} attempts",
            str(last_error) if last_error else None,
        )
