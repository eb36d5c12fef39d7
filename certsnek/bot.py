"""
Public entry point for certsnek.
"""

import logging
from typing import Optional

from .account import AccountManager
from .challenge import ChallengeCoordinator, RetryPolicy
from .config import LETSENCRYPT_DIRECTORY_URL, LETSENCRYPT_STAGING_DIRECTORY_URL
from .errors import ConfigurationError
from .issuer import CERT_EXPIRY_THRESHOLD_DAYS, CertificateIssuer, IssuanceResult, IssuanceStatus
from .responder import DEFAULT_PORT, ChallengeResponder
from .store import KeyMaterialStore
from .transport import AcmeTransport, Transport

logger = logging.getLogger(__name__)

TOS_URL = "https://letsencrypt.org/repository/"


class CertBot:
    """
    Issues and renews single-domain certificates from an ACME authority.

    The storage directory holds the account key, the registration reference
    and one subdirectory per domain. Everything in it is confidential and
    should only be readable by the administrator.

    Args:
        storage_dir: certsnek storage root
        contact_email: Contact address registered with the authority
        transport: ACME transport, AcmeTransport by default
        responder: http-01 responder, a new ChallengeResponder by default
        policy: Retry policy for challenge polling and certificate download
        http_port: Port the challenge responder listens on
        directory_url: Overrides the Let's Encrypt directory URLs
        renew_before_days: Renew certificates expiring within this many days
    """

    def __init__(
        self,
        storage_dir: str,
        contact_email: Optional[str] = None,
        transport: Optional[Transport] = None,
        responder=None,
        policy: Optional[RetryPolicy] = None,
        http_port: int = DEFAULT_PORT,
        directory_url: Optional[str] = None,
        renew_before_days: int = CERT_EXPIRY_THRESHOLD_DAYS,
    ):
        self.store = KeyMaterialStore(storage_dir)
        self.transport = transport or AcmeTransport()
        self.directory_url = directory_url
        self.accounts = AccountManager(self.store, self.transport)
        self.coordinator = ChallengeCoordinator(
            responder if responder is not None else ChallengeResponder(),
            policy=policy,
            port=http_port,
        )
        self.issuer = CertificateIssuer(
            self.store,
            self.accounts,
            self.coordinator,
            contact_email=contact_email,
            download_policy=policy,
            renew_before_days=renew_before_days,
        )

    def authority_url(self, use_staging: bool) -> str:
        if self.directory_url:
            return self.directory_url
        return LETSENCRYPT_STAGING_DIRECTORY_URL if use_staging else LETSENCRYPT_DIRECTORY_URL

    def issue_or_renew(
        self,
        domain: str,
        agreement_accepted: bool,
        organisation: str,
        passphrase: str,
        force_renew: bool = False,
        use_staging: bool = False,
    ) -> IssuanceResult:
        """
        Issue a new certificate for a single domain name, or keep the current one.

        If a certificate is already stored and stays valid for the renewal
        window, nothing is requested. Otherwise the account is registered
        or bound, the domain is validated over http-01, and the new
        certificate is downloaded into ``<storage>/<domain>/certificate.p12``.

        Args:
            domain: The domain name to certify
            agreement_accepted: Whether the authority's terms of service are accepted
            organisation: Organisation name put in the certificate request
            passphrase: Passphrase of the output keystore
            force_renew: Skip the validity check and always request a certificate
            use_staging: Use the staging authority (for testing)

        Returns:
            The IssuanceResult for the domain
        """
        if not agreement_accepted:
            error = ConfigurationError(
                "You must agree to the terms of service of the certificate authority. "
                f"Read more here: {TOS_URL}"
            )
            logger.error(str(error))
            return IssuanceResult(domain, IssuanceStatus.FAILED, error=error)

        return self.issuer.issue_or_renew(
            domain,
            organisation,
            passphrase,
            self.authority_url(use_staging),
            force_renew=force_renew,
        )
