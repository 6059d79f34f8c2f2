"""Readiness protocol for biometric models.

Readiness is an explicit ``LOADING -> READY | FAILED`` state machine: a
synchronous check first, then an asynchronous load raced against a timeout,
then bounded polling. All timings are constructor arguments so tests can
drive the whole protocol without real waiting.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Optional, Protocol

from asgiref.sync import sync_to_async

from . import config, monitoring
from .errors import ModelLoadFailed, ModelLoadTimeout, VerificationError

logger = logging.getLogger(__name__)


class ModelState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class ModelLoader(Protocol):
    def is_ready(self) -> bool:
        """Cheap synchronous readiness check that never triggers a load."""

    async def load(self) -> bool:
        """Load the models, returning ``True`` when they are usable."""


class EmbedderModelLoader:
    """Adapt a :class:`~verification.biometrics.FaceEmbedder` to :class:`ModelLoader`."""

    def __init__(self, embedder) -> None:
        self._embedder = embedder

    def is_ready(self) -> bool:
        return self._embedder.is_ready()

    async def load(self) -> bool:
        # Model loading blocks, so run it in a worker thread.
        await sync_to_async(self._embedder.load, thread_sensitive=False)()
        return self._embedder.is_ready()


class ModelReadiness:
    """Drive a :class:`ModelLoader` until it is ready or the retry budget is spent."""

    def __init__(
        self,
        loader: ModelLoader,
        *,
        load_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self.load_timeout = config.get_model_load_timeout() if load_timeout is None else load_timeout
        self.poll_interval = config.get_model_poll_interval() if poll_interval is None else poll_interval
        self.max_attempts = config.get_model_poll_attempts() if max_attempts is None else max_attempts
        self._clock = clock
        self.state = ModelState.LOADING
        self.failure: Optional[VerificationError] = None
        self.poll_attempts = 0

    def is_ready(self) -> bool:
        return self.state is ModelState.READY

    async def ensure_ready(self) -> ModelState:
        """Return :attr:`ModelState.READY` or raise the failure reason.

        Raises :class:`ModelLoadTimeout` once polling is exhausted and
        :class:`ModelLoadFailed` when the loader raises.
        """

        started = self._clock()
        self.state = ModelState.LOADING
        self.failure = None
        self.poll_attempts = 0

        if self._loader.is_ready():
            return self._mark_ready(started)

        load_task = asyncio.ensure_future(self._loader.load())
        try:
            try:
                loaded = await asyncio.wait_for(asyncio.shield(load_task), timeout=self.load_timeout)
            except asyncio.TimeoutError:
                loaded = False
                logger.info(
                    "Model load still running after %.1fs, polling for completion",
                    self.load_timeout,
                    extra={"event": "model_load", "status": "polling"},
                )
            except Exception as exc:
                logger.exception("Model load raised", extra={"event": "model_load", "status": "failed"})
                self._fail(ModelLoadFailed(), started, "failed", cause=exc)

            if loaded or self._loader.is_ready():
                return self._mark_ready(started)

            for attempt in range(1, self.max_attempts + 1):
                self.poll_attempts = attempt
                await asyncio.sleep(self.poll_interval)
                if self._loader.is_ready():
                    return self._mark_ready(started)
                if load_task.done() and not load_task.cancelled() and load_task.exception() is not None:
                    self._fail(ModelLoadFailed(), started, "failed", cause=load_task.exception())
                if attempt % 10 == 0:
                    logger.debug("Model readiness check #%d: not ready", attempt)

            self._fail(ModelLoadTimeout(), started, "timeout")
        finally:
            if not load_task.done():
                load_task.cancel()

    def _mark_ready(self, started: float) -> ModelState:
        self.state = ModelState.READY
        monitoring.record_model_load("ready", self._clock() - started)
        return self.state

    def _fail(
        self,
        error: VerificationError,
        started: float,
        status: str,
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.state = ModelState.FAILED
        self.failure = error
        monitoring.record_model_load(status, self._clock() - started)
        raise error from cause
