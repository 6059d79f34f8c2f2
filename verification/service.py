"""Caller-facing operations of the attendance verification pipeline.

:class:`AttendanceVerificationService` is what the attendance UI talks to. It
keeps at most one active :class:`~verification.capture.CaptureSession`
(opening a new one cancels the previous session and so releases the camera)
and remembers, per employee, which verifications succeeded until a punch is
accepted.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Optional, Sequence

from asgiref.sync import sync_to_async

from . import config, monitoring
from .biometrics import BiometricMatcher, MatchResult
from .camera import CameraProvider
from .capture import CaptureMode, CaptureSession, PoseCapture, PoseLabel, SessionState
from .decision import Decision, EventType, PunchRecord, VerificationSignals, decide
from .errors import (
    InvalidTransition,
    LowConfidenceMatch,
    OutOfRange,
    PolicyNotConfigured,
    ProfileNotFound,
    VerificationError,
)
from .geofence import GeofenceResult, LocationPolicy, verify_policy
from .geolocation import GeolocationProvider, acquire_position_fix
from .model_readiness import EmbedderModelLoader, ModelReadiness
from .stores import (
    CredentialStore,
    EmployeeDirectory,
    FaceProfile,
    FaceProfileStore,
    LocationPolicyStore,
    PunchStore,
)
from .webauthn import (
    AuthenticationResult,
    HardwareCredential,
    HardwareCredentialAuthenticator,
    SecureHardwareAuthenticator,
    infer_device_label,
)

logger = logging.getLogger(__name__)


def _db(func):
    return sync_to_async(func, thread_sensitive=True)


class AttendanceVerificationService:
    def __init__(
        self,
        *,
        camera: CameraProvider,
        geolocation: GeolocationProvider,
        policies: LocationPolicyStore,
        profiles: FaceProfileStore,
        credentials: CredentialStore,
        punches: PunchStore,
        authenticator: Optional[SecureHardwareAuthenticator] = None,
        directory: Optional[EmployeeDirectory] = None,
        matcher: Optional[BiometricMatcher] = None,
        readiness: Optional[ModelReadiness] = None,
        hardware: Optional[HardwareCredentialAuthenticator] = None,
        site_id: Optional[str] = None,
        detection_interval: Optional[float] = None,
        restart_delay: Optional[float] = None,
    ) -> None:
        self._camera = camera
        self._geolocation = geolocation
        self._policies = policies
        self._profiles = profiles
        self._punches = punches
        self._directory = directory
        self._matcher = matcher or BiometricMatcher()
        self._readiness = readiness or ModelReadiness(EmbedderModelLoader(self._matcher.embedder))
        self._hardware = hardware or HardwareCredentialAuthenticator(authenticator, credentials)
        self._site_id = site_id if site_id is not None else config.get_default_site_id()
        self._detection_interval = detection_interval
        self._restart_delay = restart_delay

        self._session: Optional[CaptureSession] = None
        self._signals: Dict[str, VerificationSignals] = {}

    # -- state ---------------------------------------------------------

    @property
    def active_session(self) -> Optional[CaptureSession]:
        if self._session is not None and self._session.is_finished:
            self._session = None
        return self._session

    def signals_for(self, employee_id: str) -> VerificationSignals:
        return self._signals.get(employee_id, VerificationSignals())

    def _update_signals(self, employee_id: str, **changes) -> VerificationSignals:
        signals = replace(self.signals_for(employee_id), **changes)
        self._signals[employee_id] = signals
        return signals

    async def _policy(self) -> Optional[LocationPolicy]:
        policy = await _db(self._policies.get_active)(self._site_id)
        if policy is not None and not policy.active:
            return None
        return policy

    # -- capture sessions ----------------------------------------------

    async def begin_enrollment(self, employee_id: str) -> CaptureSession:
        """Open a five-pose enrollment session for ``employee_id``."""

        return await self._open_session(CaptureMode.ENROLLMENT, employee_id)

    async def begin_verification(self, employee_id: str) -> CaptureSession:
        """Open a single-pose session matching against the primary profile.

        Raises :class:`ProfileNotFound` if the employee never enrolled.
        """

        profile = await _db(self._profiles.get_primary)(employee_id)
        if profile is None:
            self._update_signals(employee_id, has_profile=False)
            raise ProfileNotFound()
        self._update_signals(employee_id, has_profile=True, biometric=None)
        return await self._open_session(
            CaptureMode.VERIFICATION, employee_id, enrolled=profile.matching_descriptors()
        )

    async def _open_session(self, mode: CaptureMode, employee_id: str, *, enrolled=None) -> CaptureSession:
        await self.cancel()
        session = CaptureSession(
            mode,
            self._camera,
            self._matcher,
            readiness=self._readiness,
            enrolled=enrolled,
            employee_id=employee_id,
            detection_interval=self._detection_interval,
            restart_delay=self._restart_delay,
        )
        self._session = session
        try:
            await session.start()
        except BaseException:
            self._session = None
            raise
        logger.info(
            "Started %s session",
            mode.value,
            extra={"event": "capture_session", "status": "started", "employee_id": employee_id},
        )
        return session

    async def submit_capture(self, pose: Optional[PoseLabel] = None) -> PoseCapture:
        """Capture the active pose of the current session.

        Completing an enrollment stores the new primary profile; completing a
        verification records the match for the next punch.
        """

        session = self.active_session
        if session is None:
            raise InvalidTransition("No capture session is active.")
        employee_id = session.employee_id

        try:
            record = await session.capture(pose)
        except LowConfidenceMatch:
            if session.last_match is not None:
                self._update_signals(employee_id, biometric=session.last_match)
            raise

        if session.state is SessionState.COMPLETE:
            self._session = None
            if session.mode is CaptureMode.ENROLLMENT:
                await self._store_enrollment(employee_id, session)
            else:
                self._update_signals(employee_id, biometric=record.match, has_profile=True)
        return record

    async def _store_enrollment(self, employee_id: str, session: CaptureSession) -> None:
        descriptors = {pose.value: vector for pose, vector in session.descriptors().items()}
        profile = FaceProfile(
            employee_id=employee_id,
            descriptor=descriptors[PoseLabel.FRONT.value],
            pose_descriptors=descriptors,
        )
        await _db(self._profiles.replace_primary)(profile)
        self._update_signals(employee_id, has_profile=True)

    async def cancel(self) -> None:
        """Cancel the active capture session, if any, releasing the camera."""

        session, self._session = self._session, None
        if session is not None and not session.is_finished:
            await session.cancel()

    # -- location ------------------------------------------------------

    async def begin_geofence_check(self, employee_id: str) -> GeofenceResult:
        """Acquire a position fix and check it against the active site.

        Raises :class:`OutOfRange` when the fix lies outside the site radius;
        the failed result is still remembered so a later punch is rejected
        for the same reason.
        """

        policy = await self._policy()
        if policy is None:
            raise PolicyNotConfigured()

        fix = await acquire_position_fix(self._geolocation)
        result = verify_policy(policy, fix.latitude, fix.longitude)
        self._update_signals(employee_id, geofence=result, position=fix)
        monitoring.record_geofence_check(result.verified, result.raw_distance_m)
        logger.info(
            "Geofence check %.2fm of %.0fm",
            result.distance_m,
            result.radius_m,
            extra={
                "event": "geofence_check",
                "status": "inside" if result.verified else "outside",
                "employee_id": employee_id,
            },
        )

        if not result.verified:
            raise OutOfRange(result.distance_m, result.radius_m)
        return result

    # -- hardware credentials ------------------------------------------

    async def register_hardware_credential(
        self, employee_id: str, *, user_agent: Optional[str] = None
    ) -> HardwareCredential:
        display_name = None
        if self._directory is not None:
            display_name = await _db(self._directory.get_display_name)(employee_id)
        return await self._hardware.register(
            employee_id,
            user_name=employee_id,
            display_name=display_name or employee_id,
            device_label=infer_device_label(user_agent),
        )

    async def authenticate_hardware_credential(self, employee_id: str) -> AuthenticationResult:
        try:
            result = await self._hardware.authenticate(employee_id)
        except VerificationError:
            # A failed attempt revokes any earlier hardware verification.
            self._update_signals(employee_id, hardware_verified=False)
            raise
        self._update_signals(employee_id, hardware_verified=result.verified)
        return result

    async def list_hardware_credentials(self, employee_id: str) -> Sequence[HardwareCredential]:
        return await _db(self._hardware.list_credentials)(employee_id)

    async def remove_hardware_credential(self, employee_id: str, credential_id: str) -> bool:
        return await _db(self._hardware.remove_credential)(employee_id, credential_id)

    # -- punching ------------------------------------------------------

    async def attempt_punch(
        self, employee_id: str, event_type: EventType, *, device_info: str = ""
    ) -> Decision:
        """Decide on a punch and persist it when accepted.

        Returns the stored :class:`PunchRecord` or a
        :class:`~verification.decision.Rejection`; nothing is written on
        rejection.
        """

        policy = await self._policy()
        signals = self.signals_for(employee_id)
        if policy is not None and policy.biometric_required and not signals.has_profile:
            profile = await _db(self._profiles.get_primary)(employee_id)
            signals = self._update_signals(employee_id, has_profile=profile is not None)

        decision = decide(
            policy,
            signals,
            employee_id=employee_id,
            event_type=EventType(event_type),
            device_info=device_info,
        )
        if isinstance(decision, PunchRecord):
            await _db(self._punches.save)(decision)
            # Each punch needs fresh verification.
            self._signals.pop(employee_id, None)
        return decision

    # -- helpers -------------------------------------------------------

    def last_match(self, employee_id: str) -> Optional[MatchResult]:
        return self.signals_for(employee_id).biometric
