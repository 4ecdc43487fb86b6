"""Per-mount controller sequencing load -> resolve -> render for one surface.

State writes are gated by a generation token and the unmount flag: a run
superseded by a newer fingerprint, or outliving its mount, keeps filling the
shared caches but never touches this instance's state again.
"""

import asyncio
import logging
import time
from typing import Any, Callable, List, Optional

from observability import get_logger, log_event
from runtime_metrics import record_counter_metric, timed_metric
from visualize.failures import VisualFailure
from visualize.fingerprint import compute_fingerprint
from visualize.loader import retrieve_task_exception
from visualize.models import InstanceState, InstanceStatus, RenderCacheEntry, VisualizationRequest
from visualize.pipeline import VisualizationPipeline, get_pipeline
from visualize.surface import Surface

_LOGGER = get_logger("molviz.visualize.instance")

StateListener = Callable[[InstanceState], Any]


class VisualizationInstance:
    def __init__(self, surface: Surface, pipeline: Optional[VisualizationPipeline] = None) -> None:
        self.surface = surface
        self.pipeline = pipeline or get_pipeline()
        self.request: Optional[VisualizationRequest] = None
        self.cache_hit = False
        self._state = InstanceState()
        self._fingerprint: Optional[str] = None
        self._generation = 0
        self._cancelled = False
        self._run: Optional["asyncio.Task[None]"] = None
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> InstanceState:
        return self._state

    @property
    def fingerprint(self) -> Optional[str]:
        return self._fingerprint

    @property
    def unmounted(self) -> bool:
        return self._cancelled

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def update(self, request: VisualizationRequest) -> InstanceState:
        if self._cancelled:
            return self._state
        fingerprint = compute_fingerprint(request)
        if fingerprint == self._fingerprint:
            # Same fingerprint never starts a second run; join the current one if any.
            await self._join()
            return self._state
        self._fingerprint = fingerprint
        self.request = request
        self._generation += 1
        self._set_state(self._generation, InstanceState())
        return await self._start(request, fingerprint)

    async def retry(self, evict_payload: bool = False) -> InstanceState:
        if self._cancelled or self.request is None or self._state.status != InstanceStatus.ERROR:
            log_event(
                _LOGGER,
                logging.INFO,
                "instance.retry_ignored",
                fingerprint=self._fingerprint,
                status=self._state.status.value,
                unmounted=self._cancelled,
            )
            return self._state
        fingerprint = self._fingerprint or compute_fingerprint(self.request)
        self.pipeline.render_cache.invalidate(fingerprint)
        if evict_payload:
            self.pipeline.resolver.invalidate(self.request.kind, self.request.identifier)
        log_event(
            _LOGGER,
            logging.INFO,
            "instance.retry",
            fingerprint=fingerprint,
            evict_payload=evict_payload,
        )
        self._generation += 1
        self._set_state(self._generation, InstanceState())
        return await self._start(self.request, fingerprint)

    def unmount(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        log_event(
            _LOGGER,
            logging.INFO,
            "instance.unmounted",
            fingerprint=self._fingerprint,
            status=self._state.status.value,
        )

    async def wait(self) -> InstanceState:
        await self._join()
        return self._state

    async def _join(self) -> None:
        run = self._run
        if run is not None and not run.done():
            await asyncio.shield(run)

    async def _start(self, request: VisualizationRequest, fingerprint: str) -> InstanceState:
        run = asyncio.get_running_loop().create_task(self._execute(self._generation, request, fingerprint))
        run.add_done_callback(retrieve_task_exception)
        self._run = run
        # The run outlives a cancelled caller so shared caches still get filled.
        await asyncio.shield(run)
        return self._state

    def _is_current(self, generation: int) -> bool:
        return not self._cancelled and generation == self._generation

    def _set_state(self, generation: int, state: InstanceState) -> bool:
        if not self._is_current(generation):
            return False
        previous = self._state
        self._state = state
        log_event(
            _LOGGER,
            logging.DEBUG,
            "instance.transition",
            fingerprint=self._fingerprint,
            from_status=previous.status.value,
            to_status=state.status.value,
            reason=state.reason,
        )
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as exc:  # noqa: BLE001
                log_event(_LOGGER, logging.WARNING, "instance.listener_failed", error=str(exc))
        return True

    def _transition(self, generation: int, status: InstanceStatus) -> bool:
        return self._set_state(generation, InstanceState(status=status))

    def _fail(self, generation: int, fingerprint: str, exc: VisualFailure) -> None:
        log_event(
            _LOGGER,
            logging.WARNING,
            "instance.failed",
            fingerprint=fingerprint,
            error_code=exc.code,
            error=exc.message,
            current=self._is_current(generation),
        )
        self._set_state(
            generation,
            InstanceState(status=InstanceStatus.ERROR, reason=exc.code, message=exc.message),
        )

    async def _execute(self, generation: int, request: VisualizationRequest, fingerprint: str) -> None:
        try:
            entry = self.pipeline.render_cache.load_render(fingerprint)
            if entry is not None:
                record_counter_metric(name="visualize.render_cache.hit")
                await self._redraw_cached(generation, request, fingerprint, entry)
                return
            record_counter_metric(name="visualize.render_cache.miss")
            if self._is_current(generation):
                self.cache_hit = False
            await self._run_pipeline(generation, request, fingerprint)
        except VisualFailure as exc:
            self._fail(generation, fingerprint, exc)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.exception("instance.unexpected_error")
            self._fail(generation, fingerprint, VisualFailure(str(exc) or type(exc).__name__))

    async def _redraw_cached(
        self,
        generation: int,
        request: VisualizationRequest,
        fingerprint: str,
        entry: RenderCacheEntry,
    ) -> None:
        if not self._transition(generation, InstanceStatus.RENDERING):
            return
        self.cache_hit = True
        engine = await self.pipeline.loader.ensure_loaded(self.pipeline.render_dependency)
        if not self._is_current(generation):
            return
        try:
            with timed_metric("visualize.stage.rendering_ms"):
                await self.pipeline.executor.render(engine, self.surface, entry.payload, request.style)
        except VisualFailure:
            # A cached entry that no longer draws must not keep short-circuiting.
            self.pipeline.render_cache.invalidate(fingerprint)
            raise
        self._transition(generation, InstanceStatus.SUCCESS)

    async def _run_pipeline(self, generation: int, request: VisualizationRequest, fingerprint: str) -> None:
        pipeline = self.pipeline
        self._transition(generation, InstanceStatus.LOADING_DEPENDENCIES)
        with timed_metric("visualize.stage.loading_dependencies_ms"):
            engine = await pipeline.loader.ensure_loaded(pipeline.render_dependency)

        self._transition(generation, InstanceStatus.RESOLVING_PAYLOAD)
        with timed_metric("visualize.stage.resolving_payload_ms"):
            payload = await pipeline.resolver.resolve(request.kind, request.identifier)

        if not self._is_current(generation):
            log_event(
                _LOGGER,
                logging.INFO,
                "instance.render_skipped",
                fingerprint=fingerprint,
                unmounted=self._cancelled,
            )
            return
        self._transition(generation, InstanceStatus.RENDERING)
        with timed_metric("visualize.stage.rendering_ms"):
            await pipeline.executor.render(engine, self.surface, payload, request.style)
        pipeline.render_cache.save_render(
            fingerprint,
            RenderCacheEntry(completed_at=time.time(), source_request=request, payload=payload),
        )
        log_event(_LOGGER, logging.INFO, "instance.rendered", fingerprint=fingerprint)
        self._transition(generation, InstanceStatus.SUCCESS)
