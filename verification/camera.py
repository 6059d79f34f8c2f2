"""Camera providers and the scoped lease a capture session holds on them."""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Optional, Protocol

import numpy as np
from imutils.video import VideoStream

from . import config, monitoring
from .errors import DeviceUnavailable, PermissionDenied

logger = logging.getLogger(__name__)


class CameraState(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


class FrameSource(Protocol):
    def read(self) -> Optional[np.ndarray]:
        """Return the most recent frame, or ``None`` if none is available."""


class CameraProvider(Protocol):
    async def open(self) -> FrameSource:
        """Acquire the device. Raises ``PermissionError`` or ``OSError`` on failure."""

    async def close(self) -> None:
        """Release the device. Must be safe to call when nothing is open."""


class VideoStreamCamera:
    """Camera provider backed by the threaded ``imutils`` video stream."""

    def __init__(self, src: Optional[int] = None, warmup_time: Optional[float] = None) -> None:
        self._src = config.get_camera_source() if src is None else src
        self._warmup_time = max(0.0, config.get_camera_warmup() if warmup_time is None else warmup_time)
        self._stream: Optional[VideoStream] = None

    async def open(self) -> FrameSource:
        if self._stream is not None:
            return self._stream

        stream = VideoStream(src=self._src).start()
        if self._warmup_time:
            await asyncio.sleep(self._warmup_time)

        if stream.read() is None:
            stream.stop()
            raise OSError(f"Camera source {self._src!r} produced no frames")

        self._stream = stream
        return stream

    async def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()


class CameraLease:
    """Exclusive, scoped ownership of a :class:`CameraProvider`.

    Platform errors are translated into :class:`PermissionDenied` and
    :class:`DeviceUnavailable` here, and :meth:`release` is idempotent so it
    can run on every exit path.
    """

    def __init__(self, provider: CameraProvider) -> None:
        self._provider = provider
        self._source: Optional[FrameSource] = None
        self.state = CameraState.INITIALIZING

    @property
    def active(self) -> bool:
        return self._source is not None

    async def acquire(self) -> None:
        if self._source is not None:
            return

        self.state = CameraState.INITIALIZING
        start_time = time.perf_counter()
        try:
            self._source = await self._provider.open()
        except PermissionError as exc:
            self._record_start_failure(start_time, exc)
            raise PermissionDenied(
                "Failed to access camera.",
                remediation="Please allow camera permissions and try again.",
            ) from exc
        except (OSError, RuntimeError) as exc:
            self._record_start_failure(start_time, exc)
            raise DeviceUnavailable(
                "No camera is available.",
                remediation="Connect a camera or close other applications using it.",
            ) from exc

        self.state = CameraState.READY
        monitoring.record_camera_start(True, time.perf_counter() - start_time)

    def _record_start_failure(self, start_time: float, exc: BaseException) -> None:
        self.state = CameraState.ERROR
        monitoring.record_camera_start(False, time.perf_counter() - start_time, error=str(exc))

    def read(self) -> Optional[np.ndarray]:
        """Return the current frame or ``None`` when the camera is not ready."""

        if self._source is None or self.state is not CameraState.READY:
            return None
        try:
            frame = self._source.read()
        except OSError as exc:
            self.state = CameraState.ERROR
            logger.exception("Camera read failed", extra={"event": "camera_read", "status": "failure"})
            raise DeviceUnavailable("The camera stopped responding.") from exc
        if frame is None or not isinstance(frame, np.ndarray) or frame.size == 0:
            return None
        return frame.copy()

    async def release(self) -> None:
        if self._source is None:
            return

        self._source = None
        if self.state is not CameraState.ERROR:
            self.state = CameraState.INITIALIZING
        try:
            await self._provider.close()
        except Exception as exc:
            monitoring.record_camera_stop(False, error=str(exc))
            logger.exception("Camera release failed", extra={"event": "camera_stop", "status": "failure"})
            raise
        monitoring.record_camera_stop(True)

    async def __aenter__(self) -> "CameraLease":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
