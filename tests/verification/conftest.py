"""Device and storage doubles shared by the verification tests."""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import replace
from types import SimpleNamespace

import numpy as np
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from verification.biometrics import BiometricMatcher, FaceRegion
from verification.geolocation import PositionFix
from verification.model_readiness import EmbedderModelLoader, ModelReadiness
from verification.webauthn import (
    COSE_ALG_ES256,
    AssertionResponse,
    AttestationResponse,
    assertion_payload,
    attestation_payload,
    b64decode,
    b64encode,
    build_authenticator_data,
)

KUWAIT_CITY = (29.3759, 47.9774)


def face_frame(*values: int, size: int = 8) -> np.ndarray:
    """Return a BGR frame whose first row encodes a descriptor."""

    frame = np.full((size, size, 3), 128, dtype=np.uint8)
    frame[0, : len(values), :] = np.asarray(values, dtype=np.uint8)[:, None]
    return frame


def empty_frame(size: int = 8) -> np.ndarray:
    return np.zeros((size, size, 3), dtype=np.uint8)


class FakeEmbedder:
    """Any non-black frame holds one face filling the frame."""

    dimension = 4

    def __init__(self, ready: bool = True) -> None:
        self.ready = ready
        self.load_calls = 0

    def is_ready(self) -> bool:
        return self.ready

    def load(self) -> None:
        self.load_calls += 1
        self.ready = True

    def detect(self, frame):
        if not frame.any():
            return None
        return FaceRegion(0, 0, frame.shape[1], frame.shape[0])

    def embed(self, frame, region):
        return frame[0, : self.dimension, 0].astype(np.float64)


class FakeFrameSource:
    def __init__(self, frame=None) -> None:
        self.frame = frame

    def read(self):
        return self.frame


class FakeCamera:
    def __init__(self, frame=None, *, error: BaseException | None = None) -> None:
        self.source = FakeFrameSource(frame)
        self.error = error
        self.open_calls = 0
        self.close_calls = 0
        self.is_open = False

    @property
    def frame(self):
        return self.source.frame

    @frame.setter
    def frame(self, value) -> None:
        self.source.frame = value

    async def open(self):
        self.open_calls += 1
        if self.error is not None:
            raise self.error
        self.is_open = True
        return self.source

    async def close(self) -> None:
        self.close_calls += 1
        self.is_open = False


class FakeGeolocation:
    def __init__(self, latitude=KUWAIT_CITY[0], longitude=KUWAIT_CITY[1], *, error=None, delay=0.0):
        self.latitude = latitude
        self.longitude = longitude
        self.error = error
        self.delay = delay
        self.timestamp = None

    async def get_fix(self, timeout, max_age):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return PositionFix(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy_m=5.0,
            timestamp=self.timestamp if self.timestamp is not None else time.time(),
        )


class InMemoryPolicyStore:
    def __init__(self, policy=None) -> None:
        self.policy = policy

    def get_active(self, site_id=None):
        return self.policy


class InMemoryProfileStore:
    def __init__(self) -> None:
        self.history = []

    def get_primary(self, employee_id):
        for profile in reversed(self.history):
            if profile.employee_id == employee_id and profile.is_primary:
                return profile
        return None

    def replace_primary(self, profile):
        self.history = [
            replace(item, is_primary=False) if item.employee_id == profile.employee_id else item
            for item in self.history
        ]
        self.history.append(profile)
        return profile


class InMemoryCredentialStore:
    def __init__(self) -> None:
        self.credentials = {}

    def list_for_employee(self, employee_id):
        return [cred for cred in self.credentials.values() if cred.employee_id == employee_id]

    def get(self, credential_id):
        return self.credentials.get(credential_id)

    def add(self, credential):
        self.credentials[credential.credential_id] = credential
        return credential

    def record_use(self, credential_id, new_counter, used_at):
        credential = self.credentials.get(credential_id)
        if credential is None or credential.flagged_for_review or new_counter <= credential.signature_counter:
            return False
        self.credentials[credential_id] = replace(
            credential, signature_counter=new_counter, last_used_at=used_at
        )
        return True

    def flag_for_review(self, credential_id, reason):
        credential = self.credentials[credential_id]
        self.credentials[credential_id] = replace(credential, flagged_for_review=True, flag_reason=reason)

    def remove(self, credential_id):
        return self.credentials.pop(credential_id, None) is not None


class InMemoryPunchStore:
    def __init__(self) -> None:
        self.records = []

    def save(self, record):
        self.records.append(record)
        return record


class SoftwareAuthenticator:
    """Platform authenticator double that really signs with generated keys."""

    def __init__(self, algorithm: int = COSE_ALG_ES256) -> None:
        self.algorithm = algorithm
        self.keys = {}
        self.counters = {}
        self.error: BaseException | None = None
        self.counter_override: int | None = None
        self.user_present = True
        self.rp_id_override: str | None = None
        self.delay = 0.0

    def _generate_key(self):
        if self.algorithm == COSE_ALG_ES256:
            return ec.generate_private_key(ec.SECP256R1())
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)

    def _sign(self, key, payload: bytes) -> bytes:
        if isinstance(key, ec.EllipticCurvePrivateKey):
            return key.sign(payload, ec.ECDSA(hashes.SHA256()))
        return key.sign(payload, padding.PKCS1v15(), hashes.SHA256())

    async def create_credential(self, options):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        key = self._generate_key()
        credential_id = b64encode(secrets.token_bytes(16))
        public_key = key.public_key().public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
        payload = attestation_payload(
            b64decode(options.challenge), options.rp_id, options.user_handle, credential_id
        )
        self.keys[credential_id] = key
        self.counters[credential_id] = 0
        return AttestationResponse(
            credential_id=credential_id,
            public_key=b64encode(public_key),
            algorithm=self.algorithm,
            attestation=b64encode(self._sign(key, payload)),
        )

    async def get_assertion(self, options):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        credential_id = next(cid for cid in options.allow_credentials if cid in self.keys)
        if self.counter_override is not None:
            counter = self.counter_override
        else:
            counter = self.counters[credential_id] + 1
        self.counters[credential_id] = counter

        auth_data = build_authenticator_data(
            self.rp_id_override or options.rp_id, counter, user_present=self.user_present
        )
        signature = self._sign(
            self.keys[credential_id], assertion_payload(auth_data, b64decode(options.challenge))
        )
        return AssertionResponse(
            credential_id=credential_id,
            signature=b64encode(signature),
            authenticator_data=b64encode(auth_data),
            new_counter=counter,
        )


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fakes():
    """Expose the doubles and frame helpers to test modules."""

    return SimpleNamespace(
        KUWAIT_CITY=KUWAIT_CITY,
        face_frame=face_frame,
        empty_frame=empty_frame,
        FakeEmbedder=FakeEmbedder,
        FakeCamera=FakeCamera,
        FakeFrameSource=FakeFrameSource,
        FakeGeolocation=FakeGeolocation,
        InMemoryPolicyStore=InMemoryPolicyStore,
        InMemoryProfileStore=InMemoryProfileStore,
        InMemoryCredentialStore=InMemoryCredentialStore,
        InMemoryPunchStore=InMemoryPunchStore,
        SoftwareAuthenticator=SoftwareAuthenticator,
        ManualClock=ManualClock,
    )


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def matcher(embedder):
    return BiometricMatcher(
        embedder,
        distance_threshold=0.6,
        match_threshold=70.0,
        quality_check=False,
        dimension=embedder.dimension,
    )


@pytest.fixture
def readiness(embedder):
    return ModelReadiness(
        EmbedderModelLoader(embedder), load_timeout=0.05, poll_interval=0.0, max_attempts=3
    )
