"""
ACME account management for certsnek.
"""

import logging
import urllib.parse
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import AccountError, RegistrationConflict, StorageError, TransportError
from .store import ACCOUNT_PURPOSE, KeyMaterialStore
from .transport import Session, Transport

logger = logging.getLogger(__name__)

REGISTRATION_REFERENCE = "registration"


def same_host(reference: str, authority_url: str) -> bool:
    """Check whether an account URL is served by the authority at ``authority_url``."""
    ours = urllib.parse.urlsplit(authority_url).netloc.lower()
    return urllib.parse.urlsplit(reference).netloc.lower() == ours


@dataclass
class Account:
    """An account key bound to its registration at one authority."""

    key: rsa.RSAPrivateKey
    registration_ref: str
    session: Session
    authority_url: str


class AccountManager:
    """
    Owns the single ACME account of a storage root.

    The account key is generated once; the registration reference is stored
    after the first successful registration and bound directly from then on.
    A stored reference is only reused with the key it was registered with and
    at the authority host that issued it. Otherwise the account registers
    again and the reference is replaced.
    """

    def __init__(self, store: KeyMaterialStore, transport: Transport):
        self.store = store
        self.transport = transport
        self._accounts: Dict[str, Account] = {}

    def get_account(self, authority_url: str, contact_email: Optional[str] = None) -> Account:
        """
        Load, bind or register the account for an authority.

        Args:
            authority_url: ACME directory URL
            contact_email: Contact address used when registering

        Returns:
            The bound Account

        Raises:
            AccountError: The account could not be registered or bound
        """
        account = self._accounts.get(authority_url)
        if account is not None:
            return account

        try:
            key = self.store.load_key(ACCOUNT_PURPOSE)
            new_key = key is None
            if new_key:
                key = self.store.create_key(ACCOUNT_PURPOSE)
        except StorageError as e:
            raise AccountError("Could not load the account key", str(e)) from e

        try:
            session = self.transport.open_session(authority_url, key)
        except TransportError as e:
            raise AccountError(f"Could not open a session to {authority_url}", str(e)) from e

        reference = self.store.read_stored_reference(REGISTRATION_REFERENCE)
        if reference is not None and new_key:
            # A registration belongs to the key it was created with
            logger.warning(f"Account key was regenerated, discarding stored registration {reference}")
            reference = None
        elif reference is not None and not same_host(reference, authority_url):
            logger.info(f"Stored registration {reference} belongs to another authority, registering again")
            reference = None

        if reference is not None:
            logger.debug("Using stored registration.")
            self._bind(session, reference)
        else:
            logger.debug("No existing registration found.")
            reference = self._register(session, contact_email)
            try:
                self.store.write_stored_reference(REGISTRATION_REFERENCE, reference)
            except StorageError as e:
                raise AccountError("Could not store the registration reference", str(e)) from e

        account = Account(key=key, registration_ref=reference, session=session, authority_url=authority_url)
        self._accounts[authority_url] = account
        return account

    def _register(self, session: Session, contact_email: Optional[str]) -> str:
        try:
            logger.debug("Registering new account...")
            reference = session.register(contact_email)
        except RegistrationConflict as conflict:
            logger.info(f"Account already exists, binding to {conflict.location}")
            self._bind(session, conflict.location)
            return conflict.location
        except TransportError as e:
            raise AccountError("Account registration failed", str(e)) from e
        logger.debug("Registration complete")
        return reference

    def _bind(self, session: Session, reference: str) -> None:
        try:
            session.bind(reference)
        except TransportError as e:
            raise AccountError(f"Could not bind registration {reference}", str(e)) from e
