"""
Key material persistence for certsnek.

Everything certsnek needs to issue and renew certificates lives under one
storage root:

    <root>/account.pem                 account key pair
    <root>/registration.txt            account registration reference
    <root>/<domain>/domain-key.pem     domain key pair
    <root>/<domain>/last-csr.pem       last certificate signing request
    <root>/<domain>/certificate.p12    passphrase-protected keystore

All writes go to a temporary file in the target directory that is then
renamed over the destination, so a reader never sees a partial file.
"""

import os
import logging
import tempfile
from typing import Iterable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from .errors import CorruptStoreError, NotFoundError, StorageError

logger = logging.getLogger(__name__)

ACCOUNT_PURPOSE = "account"
DOMAIN_PURPOSE = "domain"

KEY_SIZE = 4096

ACCOUNT_KEY_FILE = "account.pem"
DOMAIN_KEY_FILE = "domain-key.pem"
LAST_CSR_FILE = "last-csr.pem"
KEYSTORE_FILE = "certificate.p12"


def generate_private_key(key_size: int = KEY_SIZE) -> rsa.RSAPrivateKey:
    """Generate a new RSA private key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


class KeyMaterialStore:
    """
    Reads and writes keys, certificates and references under a storage root.

    The store holds no state besides its root directory, so any number of
    instances may point at the same root.
    """

    def __init__(self, root: str, key_size: int = KEY_SIZE):
        """
        Initialize the store.

        Args:
            root: Storage root directory, created on first write
            key_size: RSA modulus size for newly generated key pairs
        """
        self.root = root
        self.key_size = key_size

    def domain_dir(self, domain: str) -> str:
        """Return the directory that holds the material for a domain."""
        if not domain or domain in (".", "..") or os.sep in domain or "/" in domain:
            raise StorageError(f"Invalid domain name for storage: {domain!r}")
        return os.path.join(self.root, domain)

    def key_path(self, purpose: str, name: Optional[str] = None) -> str:
        """Return the key file path for a purpose (and domain name)."""
        if purpose == ACCOUNT_PURPOSE:
            return os.path.join(self.root, ACCOUNT_KEY_FILE)
        if purpose == DOMAIN_PURPOSE:
            if name is None:
                raise StorageError("A domain name is required for domain keys")
            return os.path.join(self.domain_dir(name), DOMAIN_KEY_FILE)
        raise StorageError(f"Unknown key purpose: {purpose}")

    def keystore_path(self, domain: str) -> str:
        return os.path.join(self.domain_dir(domain), KEYSTORE_FILE)

    def csr_path(self, domain: str) -> str:
        return os.path.join(self.domain_dir(domain), LAST_CSR_FILE)

    def reference_path(self, name: str) -> str:
        return os.path.join(self.root, f"{name}.txt")

    def load_or_create_key(self, purpose: str, name: Optional[str] = None) -> rsa.RSAPrivateKey:
        """
        Load a key pair, generating and writing it first if needed.

        An unreadable key file is treated like a missing one and replaced.

        Args:
            purpose: ACCOUNT_PURPOSE or DOMAIN_PURPOSE
            name: Domain name, required for domain keys

        Returns:
            The RSA private key
        """
        key = self.load_key(purpose, name)
        if key is None:
            key = self.create_key(purpose, name)
        return key

    def load_key(self, purpose: str, name: Optional[str] = None) -> Optional[rsa.RSAPrivateKey]:
        """Return the stored key pair, or None if it is missing or unreadable."""
        path = self.key_path(purpose, name)
        if not os.path.exists(path):
            logger.debug(f"{purpose} key pair file not found in {path}.")
            return None
        try:
            with open(path, 'rb') as f:
                key = serialization.load_pem_private_key(f.read(), password=None)
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Could not read key file {path} ({e}), a new one will be generated")
            return None
        if not isinstance(key, rsa.RSAPrivateKey):
            logger.warning(f"Key file {path} does not hold an RSA key, a new one will be generated")
            return None
        return key

    def create_key(self, purpose: str, name: Optional[str] = None) -> rsa.RSAPrivateKey:
        """Generate a key pair and write it over any existing key file."""
        path = self.key_path(purpose, name)
        logger.debug(f"Generating new {purpose} {self.key_size} bit key pair")
        key = generate_private_key(self.key_size)
        self._write(path, key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ))
        logger.debug(f"Wrote new {purpose} key file to {path}")
        return key

    def load_certificate(self, domain: str, passphrase: str = "") -> x509.Certificate:
        """
        Load the certificate stored for a domain.

        Raises:
            NotFoundError: No keystore exists for the domain
            CorruptStoreError: The keystore cannot be opened or has no entry for the domain
        """
        path = self.keystore_path(domain)
        if not os.path.exists(path):
            raise NotFoundError(f"No keystore for {domain}", path)

        try:
            with open(path, 'rb') as f:
                data = f.read()
            store = pkcs12.load_pkcs12(data, passphrase.encode('utf-8') if passphrase else None)
        except (OSError, ValueError, TypeError) as e:
            raise CorruptStoreError(f"Could not read keystore {path}", str(e)) from e

        entries = ([store.cert] if store.cert is not None else []) + list(store.additional_certs)
        alias = domain.encode('utf-8')
        for entry in entries:
            if entry.friendly_name == alias:
                return entry.certificate
        if entries and all(entry.friendly_name is None for entry in entries):
            return entries[0].certificate
        raise CorruptStoreError(f"Keystore {path} has no entry for {domain}")

    def store_certificate(
        self,
        domain: str,
        certificate: x509.Certificate,
        passphrase: str = "",
        key: Optional[rsa.RSAPrivateKey] = None,
        chain: Iterable[x509.Certificate] = (),
    ) -> str:
        """
        Write a certificate into the domain keystore, replacing any previous one.

        Args:
            domain: Domain name, used as the keystore entry name
            certificate: The certificate to store
            passphrase: Keystore passphrase; empty means unencrypted
            key: Optional private key stored alongside the certificate
            chain: Issuer certificates stored as additional entries

        Returns:
            Path to the keystore file
        """
        if passphrase:
            encryption = serialization.BestAvailableEncryption(passphrase.encode('utf-8'))
        else:
            encryption = serialization.NoEncryption()

        cas = list(chain) or None
        try:
            data = pkcs12.serialize_key_and_certificates(
                domain.encode('utf-8'), key, certificate, cas, encryption
            )
        except (ValueError, TypeError) as e:
            raise StorageError(f"Could not build keystore for {domain}", str(e)) from e

        path = self.keystore_path(domain)
        logger.debug(f"Storing certificate in file {path}")
        self._write(path, data)
        return path

    def store_csr(self, domain: str, csr: x509.CertificateSigningRequest) -> str:
        """Write the last certificate signing request for a domain."""
        path = self.csr_path(domain)
        self._write(path, csr.public_bytes(serialization.Encoding.PEM), mode=0o644)
        return path

    def read_stored_reference(self, name: str) -> Optional[str]:
        """Return the first line of a stored reference, or None if there is none."""
        path = self.reference_path(name)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                value = f.readline().strip()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read stored reference {path}: {e}")
            return None
        return value or None

    def write_stored_reference(self, name: str, value: str) -> None:
        path = self.reference_path(name)
        logger.debug(f"Storing {name} reference in {path}")
        self._write(path, f"{value}\n".encode('utf-8'), mode=0o644)

    def _write(self, path: str, data: bytes, mode: int = 0o600) -> None:
        """Atomically replace ``path`` with ``data``."""
        directory = os.path.dirname(path) or "."
        try:
            os.makedirs(directory, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-")
        except OSError as e:
            raise StorageError(f"Could not write {path}", str(e)) from e

        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_path, mode)
            os.replace(temp_path, path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise StorageError(f"Could not write {path}", str(e)) from e
