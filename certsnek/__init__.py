"""
certsnek: Let's Encrypt certificate issuance and renewal over http-01.

Features:
- One ACME account per storage directory, registered once and reused
- http-01 domain validation with a transient challenge server
- Certificates stored in passphrase-protected PKCS#12 keystores
- Renewal only when the stored certificate expires within 30 days
- YAML configuration
"""

__version__ = "0.1.0"

from .bot import CertBot
from .errors import CertsnekError, ErrorKind
from .issuer import IssuanceResult, IssuanceStatus

__all__ = ["CertBot", "CertsnekError", "ErrorKind", "IssuanceResult", "IssuanceStatus"]
