"""Tests for the model readiness protocol."""

from __future__ import annotations

import asyncio
import time

import pytest

from verification import monitoring
from verification.errors import ModelLoadFailed, ModelLoadTimeout
from verification.model_readiness import EmbedderModelLoader, ModelReadiness, ModelState


class ScriptedLoader:
    """Loader whose readiness and load behaviour are set per test."""

    def __init__(self, *, ready_after_checks=None, load_result=True, load_error=None, hang=False):
        self.ready_after_checks = ready_after_checks
        self.load_result = load_result
        self.load_error = load_error
        self.hang = hang
        self.checks = 0
        self.load_calls = 0
        self.cancelled = False

    def is_ready(self) -> bool:
        self.checks += 1
        return self.ready_after_checks is not None and self.checks > self.ready_after_checks

    async def load(self) -> bool:
        self.load_calls += 1
        if self.load_error is not None:
            raise self.load_error
        if self.hang:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        return self.load_result


def _readiness(loader, **kwargs):
    options = {"load_timeout": 0.01, "poll_interval": 0.0, "max_attempts": 3}
    options.update(kwargs)
    return ModelReadiness(loader, **options)


def test_already_ready_models_skip_loading():
    loader = ScriptedLoader(ready_after_checks=0)
    readiness = _readiness(loader)

    assert asyncio.run(readiness.ensure_ready()) is ModelState.READY
    assert loader.load_calls == 0
    assert monitoring.metric_value("verification_model_load", {"status": "ready"}) == 1.0


def test_load_within_timeout_marks_ready():
    loader = ScriptedLoader(load_result=True)
    readiness = _readiness(loader, load_timeout=1.0)

    asyncio.run(readiness.ensure_ready())

    assert readiness.state is ModelState.READY
    assert readiness.poll_attempts == 0


def test_slow_load_is_picked_up_by_polling():
    # Initial check plus the post-timeout check fail, then the first poll succeeds.
    loader = ScriptedLoader(ready_after_checks=2, hang=True)
    readiness = _readiness(loader)

    asyncio.run(readiness.ensure_ready())

    assert readiness.state is ModelState.READY
    assert readiness.poll_attempts == 1
    assert loader.cancelled is True


def test_exhausted_polling_fails_with_timeout():
    loader = ScriptedLoader(hang=True)
    readiness = _readiness(loader, max_attempts=4)

    with pytest.raises(ModelLoadTimeout):
        asyncio.run(readiness.ensure_ready())

    assert readiness.state is ModelState.FAILED
    assert readiness.poll_attempts == 4
    assert isinstance(readiness.failure, ModelLoadTimeout)
    assert loader.cancelled is True
    assert monitoring.metric_value("verification_model_load", {"status": "timeout"}) == 1.0


def test_load_error_fails_immediately():
    loader = ScriptedLoader(load_error=RuntimeError("weights missing"))
    readiness = _readiness(loader)

    with pytest.raises(ModelLoadFailed) as excinfo:
        asyncio.run(readiness.ensure_ready())

    assert readiness.state is ModelState.FAILED
    assert readiness.poll_attempts == 0
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_model_timeout_is_retryable():
    assert ModelLoadTimeout().retryable is True


def test_readiness_can_be_retried_after_failure():
    loader = ScriptedLoader(hang=True)
    readiness = _readiness(loader, max_attempts=1)
    with pytest.raises(ModelLoadTimeout):
        asyncio.run(readiness.ensure_ready())

    loader.ready_after_checks = 0
    assert asyncio.run(readiness.ensure_ready()) is ModelState.READY


def test_embedder_loader_loads_lazily(fakes):
    embedder = fakes.FakeEmbedder(ready=False)
    readiness = _readiness(EmbedderModelLoader(embedder), load_timeout=1.0)

    asyncio.run(readiness.ensure_ready())

    assert embedder.load_calls == 1
    assert readiness.is_ready()


def test_timings_default_to_settings(settings):
    settings.VERIFICATION_MODEL_LOAD_TIMEOUT_SECONDS = 2
    settings.VERIFICATION_MODEL_POLL_INTERVAL_SECONDS = 0.25
    settings.VERIFICATION_MODEL_POLL_ATTEMPTS = 8

    readiness = ModelReadiness(ScriptedLoader())

    assert readiness.load_timeout == 2.0
    assert readiness.poll_interval == 0.25
    assert readiness.max_attempts == 8


def test_blocking_embedder_load_cannot_outlast_the_polling_budget(fakes):
    class SlowEmbedder(fakes.FakeEmbedder):
        def load(self) -> None:
            time.sleep(0.3)
            super().load()

    readiness = _readiness(
        EmbedderModelLoader(SlowEmbedder(ready=False)), load_timeout=0.02, poll_interval=0.01, max_attempts=3
    )
    ticks = []

    async def heartbeat():
        while True:
            ticks.append(time.monotonic())
            await asyncio.sleep(0.005)

    async def scenario():
        beat = asyncio.ensure_future(heartbeat())
        started = time.monotonic()
        try:
            with pytest.raises(ModelLoadTimeout):
                await readiness.ensure_ready()
            return time.monotonic() - started
        finally:
            beat.cancel()

    elapsed = asyncio.run(scenario())

    assert elapsed < 0.25
    assert readiness.state is ModelState.FAILED
    assert readiness.poll_attempts == 3
    # The event loop kept running while the model loaded in a worker thread.
    assert len(ticks) >= 4
