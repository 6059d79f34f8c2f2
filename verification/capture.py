"""Capture session state machine for face enrollment and verification.

A session owns the camera exclusively for its whole lifetime::

    INITIALIZING -> READY -> PROMPTING -> DETECTING -> CAPTURED
                                 ^                        |
                                 +------ next pose -------+--> COMPLETE

``ERROR`` is reachable from every non-terminal state and ``CANCELLED`` ends
the session on user abort. Entering any terminal state stops the detection
probe and releases the camera.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Mapping, Optional

import numpy as np

from . import config, monitoring
from .biometrics import BiometricMatcher, MatchResult
from .camera import CameraLease, CameraProvider, CameraState
from .errors import (
    DeviceUnavailable,
    InvalidTransition,
    LowConfidenceMatch,
    LowImageQuality,
    NoFaceDetected,
    ProfileNotFound,
    VerificationError,
)
from .model_readiness import EmbedderModelLoader, ModelReadiness, ModelState

logger = logging.getLogger(__name__)


class PoseLabel(str, Enum):
    FRONT = "front"
    LEFT = "left"
    RIGHT = "right"
    UP = "up"
    DOWN = "down"


ENROLLMENT_POSES = (PoseLabel.FRONT, PoseLabel.LEFT, PoseLabel.RIGHT, PoseLabel.UP, PoseLabel.DOWN)
VERIFICATION_POSES = (PoseLabel.FRONT,)

POSE_INSTRUCTIONS = {
    PoseLabel.FRONT: "Look straight at the camera",
    PoseLabel.LEFT: "Turn your head to the left",
    PoseLabel.RIGHT: "Turn your head to the right",
    PoseLabel.UP: "Look up slightly",
    PoseLabel.DOWN: "Look down slightly",
}


class CaptureMode(str, Enum):
    ENROLLMENT = "enrollment"
    VERIFICATION = "verification"


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    PROMPTING = "prompting"
    DETECTING = "detecting"
    CAPTURED = "captured"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({SessionState.COMPLETE, SessionState.ERROR, SessionState.CANCELLED})
_PROBING_STATES = frozenset({SessionState.PROMPTING, SessionState.DETECTING})


class DetectionState(str, Enum):
    NO_FACE = "no_face"
    FACE_DETECTED = "face_detected"


@dataclass(frozen=True, eq=False)
class PoseCapture:
    pose: PoseLabel
    descriptor: np.ndarray
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    match: Optional[MatchResult] = None


class CaptureSession:
    """Drive the camera through the poses required by ``mode``.

    Enrollment walks the five poses in a fixed order; verification needs one
    front capture that matches ``enrolled``. ``current_index`` only advances
    after the active pose is captured, and capture is only enabled while the
    camera and models are ready and a face is in view.
    """

    def __init__(
        self,
        mode: CaptureMode,
        camera: CameraProvider,
        matcher: BiometricMatcher,
        *,
        readiness: Optional[ModelReadiness] = None,
        enrolled: Optional[Mapping[str, np.ndarray]] = None,
        employee_id: Optional[str] = None,
        detection_interval: Optional[float] = None,
        restart_delay: Optional[float] = None,
        on_change: Optional[Callable[["CaptureSession"], None]] = None,
    ) -> None:
        self.mode = CaptureMode(mode)
        if self.mode is CaptureMode.VERIFICATION and not enrolled:
            raise ProfileNotFound()

        self.employee_id = employee_id
        self.required_poses = ENROLLMENT_POSES if self.mode is CaptureMode.ENROLLMENT else VERIFICATION_POSES
        self.current_index = 0
        self.state = SessionState.INITIALIZING
        self.detection_state = DetectionState.NO_FACE
        self.error: Optional[VerificationError] = None
        self.last_match: Optional[MatchResult] = None

        self._matcher = matcher
        self._enrolled = dict(enrolled or {})
        self._lease = CameraLease(camera)
        self._readiness = readiness or ModelReadiness(EmbedderModelLoader(matcher.embedder))
        self._detection_interval = (
            config.get_detection_interval() if detection_interval is None else detection_interval
        )
        self._restart_delay = config.get_camera_restart_delay() if restart_delay is None else restart_delay
        self._on_change = on_change
        self._captures: Dict[PoseLabel, PoseCapture] = {}
        self._detection_task: Optional[asyncio.Task] = None
        self._capturing = False

    # -- read-only views -----------------------------------------------

    @property
    def camera_state(self) -> CameraState:
        return self._lease.state

    @property
    def models_state(self) -> ModelState:
        return self._readiness.state

    @property
    def captured(self) -> frozenset:
        return frozenset(self._captures)

    @property
    def captures(self) -> Dict[PoseLabel, PoseCapture]:
        return dict(self._captures)

    @property
    def current_pose(self) -> Optional[PoseLabel]:
        if self.current_index >= len(self.required_poses):
            return None
        return self.required_poses[self.current_index]

    @property
    def instruction(self) -> Optional[str]:
        pose = self.current_pose
        return POSE_INSTRUCTIONS[pose] if pose is not None else None

    @property
    def is_finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def can_capture(self) -> bool:
        return (
            self.state in _PROBING_STATES
            and not self._capturing
            and self.camera_state is CameraState.READY
            and self.models_state is ModelState.READY
            and self.detection_state is DetectionState.FACE_DETECTED
        )

    def descriptors(self) -> Dict[PoseLabel, np.ndarray]:
        """Return the captured descriptors keyed by pose, in capture order."""

        return {pose: self._captures[pose].descriptor for pose in self.required_poses if pose in self._captures}

    # -- lifecycle -----------------------------------------------------

    async def start(self) -> None:
        """Bring models and camera up, then prompt for the first pose."""

        if self.state is not SessionState.INITIALIZING:
            raise InvalidTransition("Capture session already started.")

        try:
            await self._readiness.ensure_ready()
            await self._lease.acquire()
        except VerificationError as exc:
            await self._fail(exc)
            raise
        except asyncio.CancelledError:
            await self._release()
            raise

        self._set_state(SessionState.READY)
        self._prompt()

    async def cancel(self) -> None:
        if self.is_finished:
            return
        self._set_state(SessionState.CANCELLED)
        await self._release()
        monitoring.record_capture_session(self.mode.value, SessionState.CANCELLED.value)

    async def __aenter__(self) -> "CaptureSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.is_finished:
            await self.cancel()

    # -- detection -----------------------------------------------------

    def _prompt(self) -> None:
        self.detection_state = DetectionState.NO_FACE
        self._set_state(SessionState.PROMPTING)
        self._detection_task = asyncio.create_task(self._detection_loop())

    async def _detection_loop(self) -> None:
        try:
            while self.state in _PROBING_STATES:
                await self.probe()
                await asyncio.sleep(self._detection_interval)
        except VerificationError as exc:
            await self._fail(exc)
        except Exception as exc:
            logger.exception("Face detection probe failed", extra={"event": "detection_probe"})
            await self._fail(VerificationError(f"Face detection failed: {exc}"))

    async def probe(self) -> DetectionState:
        """Sample the current frame once and update :attr:`detection_state`."""

        if self.state not in _PROBING_STATES:
            return self.detection_state

        frame = self._lease.read()
        region = self._matcher.detect(frame)
        self.detection_state = DetectionState.FACE_DETECTED if region is not None else DetectionState.NO_FACE
        if self.state is SessionState.PROMPTING:
            self._set_state(SessionState.DETECTING)
        else:
            self._notify()
        return self.detection_state

    # -- capture -------------------------------------------------------

    async def capture(self, pose: Optional[PoseLabel] = None) -> PoseCapture:
        """Capture the active pose from the current frame.

        ``pose`` guards against the UI capturing out of order: anything other
        than :attr:`current_pose` is rejected without changing state. Failed
        detections and low-confidence matches return the session to
        ``DETECTING`` and are re-raised for the caller to retry.
        """

        if self.is_finished:
            raise InvalidTransition("Capture session has ended.")
        active_pose = self.current_pose
        if pose is not None and PoseLabel(pose) is not active_pose:
            raise InvalidTransition(f"Capture the {active_pose.value} pose first.")
        if not self.can_capture:
            raise InvalidTransition("Capture is not available until a face is detected.")

        self._capturing = True
        try:
            frame = self._lease.read()
            try:
                descriptor = self._matcher.extract_descriptor(frame)
            except (NoFaceDetected, LowImageQuality):
                self.detection_state = DetectionState.NO_FACE
                self._set_state(SessionState.DETECTING)
                raise

            match = None
            if self.mode is CaptureMode.VERIFICATION:
                match = self._matcher.verify(descriptor, self._enrolled)
                self.last_match = match
                if not match.verified:
                    self._set_state(SessionState.DETECTING)
                    raise LowConfidenceMatch(confidence=match.confidence)
        except DeviceUnavailable as exc:
            await self._fail(exc)
            raise
        finally:
            self._capturing = False

        record = PoseCapture(pose=active_pose, descriptor=descriptor, match=match)
        self._captures[active_pose] = record
        self._set_state(SessionState.CAPTURED)
        logger.info(
            "Captured %s pose (%d/%d)",
            active_pose.value,
            len(self._captures),
            len(self.required_poses),
            extra={"event": "pose_captured", "mode": self.mode.value},
        )

        if len(self._captures) == len(self.required_poses):
            self.current_index = len(self.required_poses)
            self._set_state(SessionState.COMPLETE)
            await self._release()
            monitoring.record_capture_session(self.mode.value, SessionState.COMPLETE.value)
        else:
            self.current_index += 1
            await self._next_pose()
        return record

    async def _next_pose(self) -> None:
        # Each pose gets a freshly acquired camera so no stale frames leak across poses.
        await self._stop_detection()
        try:
            await self._lease.release()
            if self._restart_delay:
                await asyncio.sleep(self._restart_delay)
            await self._lease.acquire()
        except VerificationError as exc:
            await self._fail(exc)
            raise
        except Exception as exc:
            error = DeviceUnavailable("The camera could not be restarted.")
            await self._fail(error)
            raise error from exc
        self._prompt()

    # -- teardown ------------------------------------------------------

    async def _fail(self, error: VerificationError) -> None:
        if self.is_finished:
            return
        self.error = error
        self._set_state(SessionState.ERROR)
        logger.warning(
            "Capture session failed: %s",
            error.code,
            extra={"event": "capture_session", "status": "error", "mode": self.mode.value},
        )
        await self._release()
        monitoring.record_capture_session(self.mode.value, SessionState.ERROR.value)

    async def _release(self) -> None:
        await self._stop_detection()
        try:
            await self._lease.release()
        except Exception:
            logger.warning("Camera release raised during session teardown", exc_info=True)

    async def _stop_detection(self) -> None:
        task, self._detection_task = self._detection_task, None
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            logger.debug("Capture session %s -> %s", self.state.value, state.value)
        self.state = state
        self._notify()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self)
