"""
HTTP-01 domain validation for certsnek.

The coordinator publishes the key authorization for a challenge token on
the validation port, asks the authority to check it and polls until the
challenge becomes valid or invalid, or the attempt budget runs out. The
responder is released on every exit path.
"""

import enum
import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import josepy as jose
from cryptography.hazmat.primitives.asymmetric import rsa

from .account import Account
from .errors import (
    ChallengeFailedError,
    ChallengeTimeoutError,
    NoChallengeError,
    ResponderError,
    TransportError,
    ValidationError,
)
from .responder import DEFAULT_PORT, challenge_path
from .transport import HTTP01, ChallengeHandle

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 20
RETRY_INTERVAL = 3.0


class ChallengeStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"

    @property
    def terminal(self) -> bool:
        return self in (ChallengeStatus.VALID, ChallengeStatus.INVALID)

    @classmethod
    def parse(cls, value: str) -> "ChallengeStatus":
        """Map an authority status string onto the four challenge states."""
        value = (value or "").lower()
        try:
            return cls(value)
        except ValueError:
            pass
        if value in ("deactivated", "expired", "revoked"):
            return cls.INVALID
        logger.debug(f"Treating unknown challenge status {value!r} as pending")
        return cls.PENDING


_RANK = {
    ChallengeStatus.PENDING: 0,
    ChallengeStatus.PROCESSING: 1,
    ChallengeStatus.VALID: 2,
    ChallengeStatus.INVALID: 2,
}


@dataclass
class Challenge:
    """State of one validation attempt. Never persisted."""

    token: str
    expected_response: str
    status: ChallengeStatus = ChallengeStatus.PENDING
    retry_after: Optional[float] = None
    error_detail: Optional[str] = None

    def advance(self, status: ChallengeStatus) -> bool:
        """
        Move to ``status`` if that is a forward transition.

        Returns:
            True if the status changed
        """
        if self.status.terminal or _RANK[status] < _RANK[self.status]:
            if status is not self.status:
                logger.debug(f"Ignoring challenge transition {self.status.value} -> {status.value}")
            return False
        changed = status is not self.status
        self.status = status
        return changed


@dataclass
class RetryPolicy:
    """Bounded polling: ``max_attempts`` queries, ``interval`` seconds apart."""

    max_attempts: int = MAX_ATTEMPTS
    interval: float = RETRY_INTERVAL
    sleep: Callable[[float], None] = time.sleep


@dataclass
class ValidationResult:
    domain: str
    error: Optional[ValidationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def key_authorization(token: str, account_key: rsa.RSAPrivateKey) -> str:
    """Return ``token.thumbprint``, the body the authority expects to fetch."""
    thumbprint = jose.JWKRSA(key=account_key.public_key()).thumbprint()
    return f"{token}.{jose.b64encode(thumbprint).decode('ascii')}"


class ChallengeCoordinator:
    """
    Drives the http-01 validation of one domain at a time.

    Args:
        responder: Object with register_path, unregister_path, listen and stop
        policy: Polling policy, defaults to 20 attempts 3 seconds apart
        port: Port the responder listens on
    """

    # The validation port and path namespace are shared by every coordinator
    _window_lock = threading.Lock()

    def __init__(self, responder, policy: Optional[RetryPolicy] = None, port: int = DEFAULT_PORT):
        self.responder = responder
        self.policy = policy or RetryPolicy()
        self.port = port

    def validate(self, account: Account, domain: str) -> ValidationResult:
        """Prove control of ``domain`` to the authority of ``account``."""
        try:
            self._validate(account, domain)
        except ValidationError as e:
            logger.error(f"Validation of {domain} failed: {e}")
            return ValidationResult(domain, error=e)
        return ValidationResult(domain)

    def _validate(self, account: Account, domain: str) -> None:
        logger.info(f"Authorizing domain {domain}")
        try:
            authorization = account.session.authorize_domain(domain)
        except TransportError as e:
            raise ValidationError(f"Could not authorize {domain}", detail=str(e)) from e

        logger.debug("Finding challenge for authorization.")
        handle = authorization.find_challenge(HTTP01)
        if handle is None:
            raise NoChallengeError(f"The authority offered no {HTTP01} challenge for {domain}")

        challenge = Challenge(
            token=handle.token,
            expected_response=key_authorization(handle.token, account.key),
        )
        path = challenge_path(challenge.token)
        logger.debug(f"Setting up http challenge for domain {domain} on url {path}.")

        with self._window_lock:
            try:
                self.responder.register_path(path, challenge.expected_response)
                try:
                    self.responder.listen(self.port)
                except ResponderError as e:
                    raise ValidationError(f"Could not publish challenge for {domain}", detail=str(e)) from e

                logger.debug("Triggering challenge.")
                try:
                    handle.trigger()
                except TransportError as e:
                    raise ValidationError(f"Could not trigger challenge for {domain}", detail=str(e)) from e

                self._wait_for_completion(handle, challenge)
            finally:
                self.responder.unregister_path(path)
                self.responder.stop()

        logger.info("Authorizing domain finished successfully.")

    def _wait_for_completion(self, handle: ChallengeHandle, challenge: Challenge) -> None:
        logger.debug("Waiting for challenge completion.")
        policy = self.policy
        attempts = policy.max_attempts

        while challenge.status is not ChallengeStatus.VALID:
            logger.debug(f"Challenge update {policy.max_attempts - attempts + 1}/{policy.max_attempts}.")
            delay = policy.interval
            try:
                update = handle.update()
            except TransportError as e:
                logger.warning(f"Challenge update failed: {e}")
            else:
                challenge.advance(ChallengeStatus.parse(update.status))
                challenge.retry_after = update.retry_after
                if update.error:
                    challenge.error_detail = update.error
                if update.retry_after is not None:
                    delay = update.retry_after
            attempts -= 1

            if challenge.status is ChallengeStatus.VALID:
                break
            if challenge.status is ChallengeStatus.INVALID:
                raise ChallengeFailedError(
                    "Challenge failed",
                    status=challenge.status.value,
                    detail=challenge.error_detail,
                )
            if attempts <= 0:
                raise ChallengeTimeoutError(
                    f"Challenge did not complete after {policy.max_attempts} attempts",
                    status=challenge.status.value,
                    detail=challenge.error_detail,
                )
            policy.sleep(delay)
