import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from errors import ERROR_CODE_MAP, explain_error
from observability import get_logger, log_event
from visualize.failures import InvalidIdentifier
from visualize.fingerprint import compute_fingerprint
from visualize.instance import VisualizationInstance
from visualize.models import IdentifierKind, InstanceState, InstanceStatus, VisualizationRequest
from visualize.pipeline import VisualizationPipeline, get_pipeline, reset_pipeline
from visualize.resolver import normalize_identifier
from visualize.surface import Surface

_LOGGER = get_logger("molviz.visualize.service")

__all__ = [
    "VisualOutcome",
    "VisualizationPipeline",
    "cache_overview",
    "get_pipeline",
    "invalidate",
    "render_visualization",
    "reset_pipeline",
]


@dataclass
class VisualOutcome:
    state: InstanceState
    fingerprint: str
    cache_hit: bool

    @property
    def ok(self) -> bool:
        return self.state.status == InstanceStatus.SUCCESS

    def error_detail(self) -> Optional[Dict[str, str]]:
        if self.ok:
            return None
        code = self.state.reason or "UNEXPECTED_ERROR"
        info = explain_error(code) or ERROR_CODE_MAP["UNEXPECTED_ERROR"]
        return {
            "error_code": code,
            "message": self.state.message or info["message"],
            "hint": info["hint"],
        }


async def render_visualization(
    request: VisualizationRequest,
    surface: Surface,
    force: bool = False,
    refresh_payload: bool = False,
    pipeline: Optional[VisualizationPipeline] = None,
) -> VisualOutcome:
    pipeline = pipeline or get_pipeline()
    fingerprint = compute_fingerprint(request)
    if force or refresh_payload:
        pipeline.render_cache.invalidate(fingerprint)
    if refresh_payload:
        pipeline.resolver.invalidate(request.kind, request.identifier)
    instance = VisualizationInstance(surface, pipeline=pipeline)
    try:
        state = await instance.update(request)
    finally:
        instance.unmount()
    log_event(
        _LOGGER,
        logging.INFO,
        "visualization.completed",
        fingerprint=fingerprint,
        status=state.status.value,
        reason=state.reason,
        cache_hit=instance.cache_hit,
    )
    return VisualOutcome(state=state, fingerprint=fingerprint, cache_hit=instance.cache_hit)


def _canonical_identifier(kind: IdentifierKind, identifier: str) -> str:
    try:
        return normalize_identifier(kind, identifier)
    except InvalidIdentifier:
        return str(identifier or "").strip()


def invalidate(
    kind: Optional[IdentifierKind] = None,
    identifier: Optional[str] = None,
    fingerprint: Optional[str] = None,
    pipeline: Optional[VisualizationPipeline] = None,
) -> Dict[str, int]:
    """Evict cached work and return how many entries each cache dropped.

    A fingerprint evicts that single render. ``kind`` with ``identifier``
    evicts the payload and every style variant rendered from it. With none
    of them both caches are cleared.
    """
    pipeline = pipeline or get_pipeline()
    removed = {"payload": 0, "render": 0}
    if fingerprint:
        removed["render"] += int(pipeline.render_cache.invalidate(fingerprint))
    if kind is not None and identifier:
        removed["payload"] += int(pipeline.resolver.invalidate(kind, identifier))
        removed["render"] += pipeline.render_cache.invalidate_identifier(
            kind, identifier, normalize=_canonical_identifier
        )
    elif not fingerprint:
        removed["payload"] = pipeline.payload_cache.clear()
        removed["render"] = pipeline.render_cache.clear()
    log_event(
        _LOGGER,
        logging.INFO,
        "visualization.invalidated",
        kind=kind.value if kind is not None else None,
        identifier=identifier,
        fingerprint=fingerprint,
        payload_removed=removed["payload"],
        render_removed=removed["render"],
    )
    return removed


def cache_overview(pipeline: Optional[VisualizationPipeline] = None) -> Dict[str, Any]:
    pipeline = pipeline or get_pipeline()
    return {
        "payload": pipeline.payload_cache.stats(),
        "render": pipeline.render_cache.stats(),
        "dependencies": pipeline.loader.statuses(),
    }
