"""
Error taxonomy for certsnek.

Every failure that reaches a caller is one of the CertsnekError subclasses
below and carries an ErrorKind, so callers can branch on the kind instead
of catching a generic exception.
"""

import enum
from typing import Optional


class ErrorKind(enum.Enum):
    """The categories a failed issuance pass is reported under."""

    CONFIGURATION = "configuration"
    STORAGE = "storage"
    ACCOUNT = "account"
    VALIDATION = "validation"
    ISSUANCE = "issuance"


class CertsnekError(Exception):
    """Base class for all certsnek errors."""

    kind: ErrorKind = ErrorKind.ISSUANCE

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


class ConfigurationError(CertsnekError):
    """Invalid configuration, e.g. the terms of service were not accepted."""

    kind = ErrorKind.CONFIGURATION


class StorageError(CertsnekError):
    """A key, reference or certificate could not be read or written."""

    kind = ErrorKind.STORAGE


class NotFoundError(StorageError):
    """The requested file does not exist in the storage root."""


class CorruptStoreError(StorageError):
    """The requested file exists but cannot be parsed."""


class AccountError(CertsnekError):
    """The ACME account could not be registered or bound."""

    kind = ErrorKind.ACCOUNT


class ValidationError(CertsnekError):
    """
    Domain validation failed.

    Carries the last challenge status reported by the authority and the
    authority's error detail, when there is one.
    """

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, status: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, detail)
        self.status = status

    def __str__(self) -> str:
        text = self.message
        if self.status:
            text = f"{text}. Status: {self.status}"
        if self.detail:
            text = f"{text} error: {self.detail}"
        return text


class NoChallengeError(ValidationError):
    """The authority did not offer an http-01 challenge."""


class ChallengeFailedError(ValidationError):
    """The authority marked the challenge invalid."""


class ChallengeTimeoutError(ValidationError):
    """The challenge did not reach a terminal status within the attempt budget."""


class IssuanceError(CertsnekError):
    """The certificate could not be requested, downloaded or stored."""

    kind = ErrorKind.ISSUANCE


class SubmissionError(IssuanceError):
    """The authority rejected the certificate signing request."""


class DownloadTimeoutError(IssuanceError):
    """The issued certificate could not be downloaded within the attempt budget."""


class TransportError(Exception):
    """Raised by ACME transport implementations for any protocol failure."""


class RegistrationConflict(TransportError):
    """The account for this key already exists at ``location``."""

    def __init__(self, location: str):
        super().__init__(f"Account already exists at {location}")
        self.location = location


class ResponderError(Exception):
    """The challenge responder could not start listening."""
