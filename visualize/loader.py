"""Process-wide loader for lazily imported render/conversion engines.

Each dependency name moves through ``not_loaded -> loading -> loaded``. A
failed or timed-out load drops back to ``not_loaded`` so the next caller can
try again; concurrent callers during ``loading`` all await one shared task.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from config import VIZ_CONVERSION_TOOLKIT, VIZ_DEPENDENCY_TIMEOUT_SECONDS, VIZ_RENDER_ENGINE
from observability import get_logger, log_event
from runtime_metrics import record_counter_metric, record_timing_metric
from visualize.engines import load_py3dmol_engine, load_rdkit_toolkit
from visualize.failures import DependencyLoadFailed, DependencyLoadTimeout, VisualFailure

_LOGGER = get_logger("molviz.visualize.loader")

DependencyFactory = Callable[[], Union[Any, Awaitable[Any]]]


def retrieve_task_exception(task: "asyncio.Task[Any]") -> None:
    # Marks the failure as observed when every awaiter was cancelled before it finished.
    if not task.cancelled():
        task.exception()


class DependencyLoader:
    def __init__(
        self,
        factories: Optional[Dict[str, DependencyFactory]] = None,
        timeout_seconds: float = VIZ_DEPENDENCY_TIMEOUT_SECONDS,
    ) -> None:
        self._factories: Dict[str, DependencyFactory] = dict(factories or {})
        self._loaded: Dict[str, Any] = {}
        self._pending: Dict[str, "asyncio.Task[Any]"] = {}
        self.timeout_seconds = float(timeout_seconds)

    def register(self, name: str, factory: DependencyFactory) -> None:
        self._factories[name] = factory

    def status(self, name: str) -> str:
        if name in self._loaded:
            return "loaded"
        if name in self._pending:
            return "loading"
        return "not_loaded"

    def statuses(self) -> Dict[str, str]:
        names = set(self._factories) | set(self._loaded) | set(self._pending)
        return {name: self.status(name) for name in sorted(names)}

    def get_loaded(self, name: str) -> Optional[Any]:
        return self._loaded.get(name)

    def invalidate(self, name: str) -> bool:
        return self._loaded.pop(name, None) is not None

    async def ensure_loaded(self, name: str) -> Any:
        handle = self._loaded.get(name)
        if handle is not None:
            return handle
        task = self._pending.get(name)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._load(name))
            task.add_done_callback(retrieve_task_exception)
            self._pending[name] = task
        # Shield so a cancelled awaiter never cancels the load other callers share.
        return await asyncio.shield(task)

    async def _invoke(self, factory: DependencyFactory) -> Any:
        result = factory()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _load(self, name: str) -> Any:
        started = time.perf_counter()
        try:
            factory = self._factories.get(name)
            if factory is None:
                raise DependencyLoadFailed(name, "no loader registered")
            log_event(_LOGGER, logging.INFO, "dependency.load.started", dependency=name)
            try:
                handle = await asyncio.wait_for(self._invoke(factory), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise DependencyLoadTimeout(name, self.timeout_seconds) from exc
            except VisualFailure:
                raise
            except Exception as exc:  # noqa: BLE001
                raise DependencyLoadFailed(name, str(exc) or type(exc).__name__) from exc
            if handle is None:
                raise DependencyLoadFailed(name, "loader returned no handle")
            # Another path may have stored a handle while this load was suspended.
            existing = self._loaded.get(name)
            if existing is not None:
                return existing
            self._loaded[name] = handle
            duration_ms = (time.perf_counter() - started) * 1000
            record_counter_metric(name="visualize.dependency.loaded")
            record_timing_metric(name="visualize.dependency.load_ms", duration_ms=duration_ms)
            log_event(
                _LOGGER,
                logging.INFO,
                "dependency.load.completed",
                dependency=name,
                duration_ms=int(duration_ms),
            )
            return handle
        except VisualFailure as exc:
            record_counter_metric(name="visualize.dependency.failed")
            log_event(
                _LOGGER,
                logging.WARNING,
                "dependency.load.failed",
                dependency=name,
                error_code=exc.code,
                error=exc.message,
            )
            raise
        finally:
            self._pending.pop(name, None)


def default_factories() -> Dict[str, DependencyFactory]:
    return {
        VIZ_RENDER_ENGINE: load_py3dmol_engine,
        VIZ_CONVERSION_TOOLKIT: load_rdkit_toolkit,
    }


_DEPENDENCY_LOADER: Optional[DependencyLoader] = None


def get_dependency_loader() -> DependencyLoader:
    global _DEPENDENCY_LOADER
    if _DEPENDENCY_LOADER is None:
        _DEPENDENCY_LOADER = DependencyLoader(default_factories())
    return _DEPENDENCY_LOADER


def reset_dependency_loader() -> None:
    global _DEPENDENCY_LOADER
    _DEPENDENCY_LOADER = None
