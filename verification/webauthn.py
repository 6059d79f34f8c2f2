"""Hardware credential registration and authentication.

Public-key challenge/response in the WebAuthn shape:

* the server issues a random single-use challenge;
* the platform authenticator signs it with a device-bound private key;
* the server verifies the signature with the stored public key and requires
  the authenticator's signature counter to strictly increase.

A counter that fails to increase means the key material may have been
copied, so the credential is flagged for review and never silently retried.
Binary values travel as standard base64 strings.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import logging
import secrets
import struct
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol, Sequence, Tuple

from asgiref.sync import sync_to_async
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm as CryptoUnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import load_der_public_key

from . import config, monitoring
from .errors import (
    AuthenticatorCancelled,
    ChallengeExpired,
    CredentialNotRegistered,
    DeviceUnavailable,
    InvalidState,
    PossibleCredentialClone,
    SignatureInvalid,
    UnknownCredential,
    UnsupportedAlgorithm,
    VerificationError,
    VerificationTimeout,
)

logger = logging.getLogger(__name__)

COSE_ALG_ES256 = -7
COSE_ALG_RS256 = -257
SUPPORTED_ALGORITHMS = (COSE_ALG_ES256, COSE_ALG_RS256)

MIN_CHALLENGE_BYTES = 32

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
_AUTH_DATA_LENGTH = 37


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    """Decode standard or URL-safe base64, tolerating missing padding."""

    if not isinstance(value, str):
        raise ValueError("Expected a base64 string")
    normalised = value.strip().replace("-", "+").replace("_", "/")
    normalised += "=" * (-len(normalised) % 4)
    try:
        return base64.b64decode(normalised, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Invalid base64 payload") from exc


def generate_challenge(size: Optional[int] = None) -> bytes:
    """Return ``size`` cryptographically random bytes (at least 32)."""

    size = config.get_challenge_bytes() if size is None else size
    if size < MIN_CHALLENGE_BYTES:
        raise ValueError(f"Challenges must be at least {MIN_CHALLENGE_BYTES} bytes")
    return secrets.token_bytes(size)


def rp_id_hash(rp_id: str) -> bytes:
    return hashlib.sha256(rp_id.encode("utf-8")).digest()


def encode_user_handle(employee_id: str) -> str:
    return b64encode(employee_id.encode("utf-8"))


@dataclass(frozen=True)
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)


def build_authenticator_data(
    rp_id: str, sign_count: int, *, user_present: bool = True, user_verified: bool = True
) -> bytes:
    """Serialise authenticator data: rp-id hash, flags byte, big-endian counter."""

    flags = (FLAG_USER_PRESENT if user_present else 0) | (FLAG_USER_VERIFIED if user_verified else 0)
    return rp_id_hash(rp_id) + struct.pack(">BI", flags, sign_count)


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    if len(data) < _AUTH_DATA_LENGTH:
        raise SignatureInvalid("Authenticator data is truncated.")
    flags, sign_count = struct.unpack(">BI", data[32:_AUTH_DATA_LENGTH])
    return AuthenticatorData(rp_id_hash=data[:32], flags=flags, sign_count=sign_count)


def assertion_payload(authenticator_data: bytes, challenge: bytes) -> bytes:
    """Bytes covered by an authentication signature."""

    return authenticator_data + hashlib.sha256(challenge).digest()


def attestation_payload(challenge: bytes, rp_id: str, user_handle: str, credential_id: str) -> bytes:
    """Bytes covered by a registration (self-)attestation signature."""

    return (
        rp_id_hash(rp_id)
        + hashlib.sha256(b64decode(user_handle)).digest()
        + challenge
        + b64decode(credential_id)
    )


def verify_signature(public_key_b64: str, algorithm: int, signature_b64: str, payload: bytes) -> None:
    """Raise :class:`SignatureInvalid` unless ``signature`` covers ``payload``."""

    try:
        public_key = load_der_public_key(b64decode(public_key_b64))
        signature = b64decode(signature_b64)
    except (ValueError, CryptoUnsupportedAlgorithm) as exc:
        raise SignatureInvalid("The credential public key or signature is malformed.") from exc

    try:
        if algorithm == COSE_ALG_ES256 and isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, payload, ec.ECDSA(hashes.SHA256()))
        elif algorithm == COSE_ALG_RS256 and isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, payload, padding.PKCS1v15(), hashes.SHA256())
        else:
            raise SignatureInvalid("The credential key does not match its declared algorithm.")
    except InvalidSignature as exc:
        raise SignatureInvalid() from exc


def infer_device_label(user_agent: Optional[str]) -> str:
    """Return a friendly device label from a user-agent string."""

    agent = (user_agent or "").lower()
    if "iphone" in agent or "ipad" in agent:
        return "iPhone/iPad"
    if "android" in agent:
        return "Android Device"
    if "windows" in agent:
        return "Windows PC"
    if "mac" in agent:
        return "Mac"
    return "Unknown Device"


@dataclass(frozen=True)
class HardwareCredential:
    credential_id: str
    employee_id: str
    public_key: str
    algorithm: int = COSE_ALG_ES256
    signature_counter: int = 0
    device_label: str = ""
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_used_at: Optional[datetime] = None
    flagged_for_review: bool = False
    flag_reason: str = ""


@dataclass(frozen=True)
class RegistrationOptions:
    challenge: str
    rp_id: str
    rp_name: str
    user_handle: str
    user_name: str
    display_name: str
    algorithms: Tuple[int, ...] = SUPPORTED_ALGORITHMS
    exclude_credentials: Tuple[str, ...] = ()
    timeout_ms: int = 60000
    user_verification: str = "required"
    authenticator_attachment: str = "platform"


@dataclass(frozen=True)
class AttestationResponse:
    credential_id: str
    public_key: str
    algorithm: int
    attestation: str
    device_label: Optional[str] = None


@dataclass(frozen=True)
class AuthenticationOptions:
    challenge: str
    rp_id: str
    allow_credentials: Tuple[str, ...]
    timeout_ms: int = 60000
    user_verification: str = "required"


@dataclass(frozen=True)
class AssertionResponse:
    credential_id: str
    signature: str
    authenticator_data: str
    new_counter: int


@dataclass(frozen=True)
class AuthenticationResult:
    verified: bool
    credential: HardwareCredential
    new_counter: int


class AuthenticatorError(Exception):
    """Raised by :class:`SecureHardwareAuthenticator` implementations.

    ``name`` follows the platform error names: ``NotAllowedError``,
    ``InvalidStateError``, ``NotSupportedError``, ``SecurityError``.
    """

    def __init__(self, name: str, message: str = "") -> None:
        self.name = name
        super().__init__(message or name)


class SecureHardwareAuthenticator(Protocol):
    async def create_credential(self, options: RegistrationOptions) -> AttestationResponse:
        ...

    async def get_assertion(self, options: AuthenticationOptions) -> AssertionResponse:
        ...


class CredentialStore(Protocol):
    def list_for_employee(self, employee_id: str) -> Sequence[HardwareCredential]:
        ...

    def get(self, credential_id: str) -> Optional[HardwareCredential]:
        ...

    def add(self, credential: HardwareCredential) -> HardwareCredential:
        ...

    def record_use(self, credential_id: str, new_counter: int, used_at: datetime) -> bool:
        """Persist ``new_counter`` only if it exceeds the stored one; return success."""

    def flag_for_review(self, credential_id: str, reason: str) -> None:
        ...

    def remove(self, credential_id: str) -> bool:
        ...


def _translate_authenticator_error(exc: AuthenticatorError, operation: str) -> VerificationError:
    if exc.name == "NotAllowedError":
        return AuthenticatorCancelled(
            f"{operation.capitalize()} cancelled or not allowed. Please try again."
        )
    if exc.name == "InvalidStateError":
        if operation == "registration":
            return InvalidState()
        return AuthenticatorCancelled("Authentication failed. Please try again.")
    if exc.name == "NotSupportedError":
        return UnsupportedAlgorithm()
    return DeviceUnavailable(f"{operation.capitalize()} failed: {exc}")


@dataclass
class _PendingChallenge:
    challenge: bytes
    issued_at: float
    purpose: str


class HardwareCredentialAuthenticator:
    """Register and challenge device-bound credentials for employees."""

    def __init__(
        self,
        authenticator: Optional[SecureHardwareAuthenticator],
        store: CredentialStore,
        *,
        rp_id: Optional[str] = None,
        rp_name: Optional[str] = None,
        timeout: Optional[float] = None,
        challenge_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._authenticator = authenticator
        self._store = store
        self.rp_id = rp_id or config.get_relying_party_id()
        self.rp_name = rp_name or config.get_relying_party_name()
        self.timeout = config.get_authenticator_timeout() if timeout is None else timeout
        self.challenge_ttl = config.get_challenge_ttl() if challenge_ttl is None else challenge_ttl
        self._clock = clock
        self._pending: Dict[Tuple[str, str], _PendingChallenge] = {}

    # -- challenges ----------------------------------------------------

    def _issue_challenge(self, employee_id: str, purpose: str) -> bytes:
        challenge = generate_challenge()
        self._pending[(employee_id, purpose)] = _PendingChallenge(challenge, self._clock(), purpose)
        return challenge

    def _consume_challenge(self, employee_id: str, purpose: str, expected_b64: str) -> bytes:
        pending = self._pending.pop((employee_id, purpose), None)
        if pending is None:
            raise ChallengeExpired()
        if self._clock() - pending.issued_at > self.challenge_ttl:
            raise ChallengeExpired("The challenge expired. Please try again.")
        if not secrets.compare_digest(b64encode(pending.challenge), expected_b64):
            raise ChallengeExpired("The response does not answer the current challenge.")
        return pending.challenge

    # -- registration --------------------------------------------------

    def begin_registration(
        self, employee_id: str, *, user_name: str, display_name: Optional[str] = None
    ) -> RegistrationOptions:
        existing = tuple(cred.credential_id for cred in self._store.list_for_employee(employee_id))
        challenge = self._issue_challenge(employee_id, "registration")
        return RegistrationOptions(
            challenge=b64encode(challenge),
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_handle=encode_user_handle(employee_id),
            user_name=user_name,
            display_name=display_name or user_name,
            exclude_credentials=existing,
            timeout_ms=int(self.timeout * 1000),
        )

    def complete_registration(
        self,
        employee_id: str,
        options: RegistrationOptions,
        response: AttestationResponse,
        *,
        device_label: Optional[str] = None,
    ) -> HardwareCredential:
        challenge = self._consume_challenge(employee_id, "registration", options.challenge)

        if response.algorithm not in SUPPORTED_ALGORITHMS:
            raise UnsupportedAlgorithm()
        if self._store.get(response.credential_id) is not None:
            raise InvalidState()

        try:
            payload = attestation_payload(challenge, self.rp_id, options.user_handle, response.credential_id)
        except ValueError as exc:
            raise SignatureInvalid("The credential response is malformed.") from exc
        verify_signature(response.public_key, response.algorithm, response.attestation, payload)

        credential = self._store.add(
            HardwareCredential(
                credential_id=response.credential_id,
                employee_id=employee_id,
                public_key=response.public_key,
                algorithm=response.algorithm,
                signature_counter=0,
                device_label=device_label or response.device_label or "Unknown Device",
            )
        )
        monitoring.record_hardware_credential("registration", "success")
        logger.info(
            "Registered hardware credential",
            extra={"event": "credential_registration", "status": "success", "employee_id": employee_id},
        )
        return credential

    async def register(
        self,
        employee_id: str,
        *,
        user_name: str,
        display_name: Optional[str] = None,
        device_label: Optional[str] = None,
    ) -> HardwareCredential:
        """Run the full registration ceremony against the platform authenticator."""

        options = await sync_to_async(self.begin_registration, thread_sensitive=True)(
            employee_id, user_name=user_name, display_name=display_name
        )
        try:
            response = await self._prompt(self._require_authenticator().create_credential(options), "registration")
            return await sync_to_async(self.complete_registration, thread_sensitive=True)(
                employee_id, options, response, device_label=device_label
            )
        except VerificationError as exc:
            monitoring.record_hardware_credential("registration", exc.code)
            raise
        finally:
            self._pending.pop((employee_id, "registration"), None)

    # -- authentication ------------------------------------------------

    def begin_authentication(self, employee_id: str) -> AuthenticationOptions:
        credentials = [
            cred for cred in self._store.list_for_employee(employee_id) if not cred.flagged_for_review
        ]
        if not credentials:
            raise CredentialNotRegistered()
        challenge = self._issue_challenge(employee_id, "authentication")
        return AuthenticationOptions(
            challenge=b64encode(challenge),
            rp_id=self.rp_id,
            allow_credentials=tuple(cred.credential_id for cred in credentials),
            timeout_ms=int(self.timeout * 1000),
        )

    def complete_authentication(
        self,
        employee_id: str,
        options: AuthenticationOptions,
        assertion: AssertionResponse,
    ) -> AuthenticationResult:
        challenge = self._consume_challenge(employee_id, "authentication", options.challenge)

        credential = self._store.get(assertion.credential_id)
        if credential is None or credential.employee_id != employee_id:
            raise UnknownCredential()
        if credential.flagged_for_review:
            raise PossibleCredentialClone("This credential is flagged for administrative review.")

        try:
            raw_auth_data = b64decode(assertion.authenticator_data)
        except ValueError as exc:
            raise SignatureInvalid("Authenticator data is malformed.") from exc
        auth_data = parse_authenticator_data(raw_auth_data)
        if not secrets.compare_digest(auth_data.rp_id_hash, rp_id_hash(self.rp_id)):
            raise SignatureInvalid("The assertion was made for a different relying party.")
        if not auth_data.user_present:
            raise SignatureInvalid("The authenticator did not confirm user presence.")
        if auth_data.sign_count != assertion.new_counter:
            raise SignatureInvalid("The reported counter does not match the signed authenticator data.")

        verify_signature(
            credential.public_key,
            credential.algorithm,
            assertion.signature,
            assertion_payload(raw_auth_data, challenge),
        )

        now = datetime.now(timezone.utc)
        if assertion.new_counter <= credential.signature_counter or not self._store.record_use(
            credential.credential_id, assertion.new_counter, now
        ):
            self._flag_clone(credential, assertion.new_counter)

        monitoring.record_hardware_credential("authentication", "success")
        logger.info(
            "Hardware credential verified",
            extra={"event": "credential_authentication", "status": "success", "employee_id": employee_id},
        )
        updated = replace(credential, signature_counter=assertion.new_counter, last_used_at=now)
        return AuthenticationResult(verified=True, credential=updated, new_counter=assertion.new_counter)

    async def authenticate(self, employee_id: str) -> AuthenticationResult:
        """Challenge the platform authenticator with any of the employee's credentials."""

        options = await sync_to_async(self.begin_authentication, thread_sensitive=True)(employee_id)
        try:
            assertion = await self._prompt(self._require_authenticator().get_assertion(options), "authentication")
            return await sync_to_async(self.complete_authentication, thread_sensitive=True)(
                employee_id, options, assertion
            )
        except VerificationError as exc:
            monitoring.record_hardware_credential("authentication", exc.code)
            raise
        finally:
            self._pending.pop((employee_id, "authentication"), None)

    # -- management ----------------------------------------------------

    def list_credentials(self, employee_id: str) -> Sequence[HardwareCredential]:
        return self._store.list_for_employee(employee_id)

    def remove_credential(self, employee_id: str, credential_id: str) -> bool:
        credential = self._store.get(credential_id)
        if credential is None or credential.employee_id != employee_id:
            raise UnknownCredential()
        return self._store.remove(credential_id)

    # -- helpers -------------------------------------------------------

    def _require_authenticator(self) -> SecureHardwareAuthenticator:
        if self._authenticator is None:
            raise DeviceUnavailable(
                "Hardware credentials are not supported on this device.",
                remediation="Please use a modern browser on a device with a platform authenticator.",
            )
        return self._authenticator

    async def _prompt(self, awaitable, operation: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise VerificationTimeout(f"The {operation} prompt timed out.") from exc
        except AuthenticatorError as exc:
            logger.warning(
                "Authenticator rejected %s: %s",
                operation,
                exc.name,
                extra={"event": f"credential_{operation}", "status": exc.name},
            )
            raise _translate_authenticator_error(exc, operation) from exc

    def _flag_clone(self, credential: HardwareCredential, new_counter: int) -> None:
        reason = (
            f"Signature counter {new_counter} did not exceed stored value "
            f"{credential.signature_counter}"
        )
        self._store.flag_for_review(credential.credential_id, reason)
        monitoring.record_credential_clone(credential.credential_id, credential.employee_id)
        raise PossibleCredentialClone()
