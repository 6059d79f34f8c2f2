"""Tests for camera acquisition and release."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

from django.test import SimpleTestCase

import numpy as np
import pytest

from verification import monitoring
from verification.camera import CameraLease, CameraState, VideoStreamCamera
from verification.errors import DeviceUnavailable, PermissionDenied


def test_acquire_and_read(fakes):
    camera = fakes.FakeCamera(fakes.face_frame(1, 2, 3, 4))
    lease = CameraLease(camera)

    asyncio.run(lease.acquire())

    assert lease.state is CameraState.READY
    assert lease.active
    frame = lease.read()
    assert frame is not camera.frame
    assert np.array_equal(frame, camera.frame)
    assert monitoring.metric_value("verification_camera_start", {"status": "success"}) == 1.0


def test_read_before_acquire_returns_none(fakes):
    lease = CameraLease(fakes.FakeCamera(fakes.face_frame(1)))
    assert lease.read() is None


def test_empty_frames_read_as_none(fakes):
    camera = fakes.FakeCamera(np.zeros((0, 0, 3), dtype=np.uint8))
    lease = CameraLease(camera)
    asyncio.run(lease.acquire())

    assert lease.read() is None
    camera.frame = None
    assert lease.read() is None


def test_permission_error_is_translated(fakes):
    camera = fakes.FakeCamera(error=PermissionError("blocked"))
    lease = CameraLease(camera)

    with pytest.raises(PermissionDenied) as excinfo:
        asyncio.run(lease.acquire())

    assert lease.state is CameraState.ERROR
    assert not lease.active
    assert "camera" in excinfo.value.remediation
    assert monitoring.metric_value("verification_camera_start", {"status": "failure"}) == 1.0


def test_missing_device_is_translated(fakes):
    lease = CameraLease(fakes.FakeCamera(error=OSError("no such device")))

    with pytest.raises(DeviceUnavailable):
        asyncio.run(lease.acquire())

    assert lease.state is CameraState.ERROR


def test_release_is_idempotent(fakes):
    camera = fakes.FakeCamera(fakes.face_frame(1))
    lease = CameraLease(camera)

    async def scenario():
        await lease.acquire()
        await lease.release()
        await lease.release()

    asyncio.run(scenario())

    assert camera.close_calls == 1
    assert not camera.is_open
    assert lease.state is CameraState.INITIALIZING


def test_release_without_acquire_is_a_no_op(fakes):
    camera = fakes.FakeCamera()
    asyncio.run(CameraLease(camera).release())
    assert camera.close_calls == 0


def test_context_manager_releases_on_error(fakes):
    camera = fakes.FakeCamera(fakes.face_frame(1))

    async def scenario():
        async with CameraLease(camera):
            assert camera.is_open
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())

    assert camera.close_calls == 1
    assert not camera.is_open


def test_read_failure_marks_camera_unavailable(fakes):
    camera = fakes.FakeCamera(fakes.face_frame(1))
    camera.source.read = MagicMock(side_effect=OSError("unplugged"))
    lease = CameraLease(camera)
    asyncio.run(lease.acquire())

    with pytest.raises(DeviceUnavailable):
        lease.read()

    assert lease.state is CameraState.ERROR
    assert lease.read() is None


class VideoStreamCameraTests(SimpleTestCase):
    """The imutils-backed provider starts and stops the threaded stream."""

    def _stream(self, frame):
        stream = MagicMock()
        stream.start.return_value = stream
        stream.read.side_effect = lambda: frame
        return stream

    @patch("verification.camera.VideoStream")
    def test_open_starts_stream_and_close_stops_it(self, mock_videostream):
        stream = self._stream(np.zeros((2, 2, 3), dtype=np.uint8))
        mock_videostream.return_value = stream
        camera = VideoStreamCamera(src=1, warmup_time=0)

        async def scenario():
            source = await camera.open()
            again = await camera.open()
            await camera.close()
            await camera.close()
            return source, again

        source, again = asyncio.run(scenario())

        mock_videostream.assert_called_once_with(src=1)
        self.assertIs(source, stream)
        self.assertIs(again, stream)
        stream.stop.assert_called_once()

    @patch("verification.camera.VideoStream")
    def test_stream_without_frames_is_unavailable(self, mock_videostream):
        stream = self._stream(None)
        mock_videostream.return_value = stream
        lease = CameraLease(VideoStreamCamera(src=0, warmup_time=0))

        with self.assertRaises(DeviceUnavailable):
            asyncio.run(lease.acquire())

        stream.stop.assert_called_once()
        self.assertIs(lease.state, CameraState.ERROR)
