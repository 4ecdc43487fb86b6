"""Draw a resolved payload into a surface with a given style bundle.

Stateless between calls. The primary pass (model + base style + region
overrides) is fatal on failure; surface and label passes only log.
"""

import asyncio
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional

from config import VIZ_RENDER_SETTLE_SECONDS
from observability import get_logger, log_event
from visualize.engines import RenderEngine, Viewer
from visualize.failures import RenderFailed
from visualize.models import (
    ColorScheme,
    PayloadFormat,
    RegionOverride,
    RepresentationStyle,
    ResolvedPayload,
    StyleOptions,
)
from visualize.surface import Surface

_LOGGER = get_logger("molviz.visualize.executor")

_CHAIN_RE = re.compile(r"^chain\s+([A-Za-z0-9])$", re.IGNORECASE)
_RESI_RE = re.compile(r"^resi\s+(-?\d+)(?:\s*-\s*(-?\d+))?$", re.IGNORECASE)


def color_config(scheme: ColorScheme) -> Dict[str, Any]:
    if scheme == ColorScheme.CHAIN:
        return {"colorscheme": "chain"}
    if scheme == ColorScheme.RESIDUE:
        return {"colorscheme": "amino"}
    if scheme in {ColorScheme.SS, ColorScheme.STRUCTURE}:
        return {"colorscheme": "ssJmol"}
    if scheme == ColorScheme.SPECTRUM:
        return {"color": "spectrum"}
    return {}


def base_style_spec(representation: RepresentationStyle, color: Dict[str, Any]) -> Dict[str, Any]:
    if representation == RepresentationStyle.SPHERE:
        return {"sphere": {"radius": 0.5, **color}}
    if representation == RepresentationStyle.LINE:
        return {"line": {"linewidth": 2, **color}}
    if representation == RepresentationStyle.CARTOON:
        return {"cartoon": dict(color)}
    if representation == RepresentationStyle.BALL_STICK:
        return {"stick": {"radius": 0.15, **color}, "sphere": {"radius": 0.3, **color}}
    if representation == RepresentationStyle.SURFACE:
        return {"stick": {"radius": 0.1, **color}}
    return {"stick": {"radius": 0.15, **color}}


def parse_region(region: str) -> Optional[Dict[str, Any]]:
    """Translate a region expression into an engine atom selection, or None."""
    text = str(region or "").strip()
    if not text:
        return None
    if text.startswith("{"):
        try:
            selection = json.loads(text)
        except ValueError:
            return None
        return selection if isinstance(selection, dict) else None
    lowered = text.lower()
    if lowered in {"ligand", "hetero", "hetatm"}:
        return {"hetflag": True}
    match = _CHAIN_RE.match(text)
    if match:
        return {"chain": match.group(1).upper()}
    match = _RESI_RE.match(text)
    if match:
        start = int(match.group(1))
        end = match.group(2)
        if end is None:
            return {"resi": start}
        return {"resi": f"{start}-{int(end)}"}
    return None


def override_style_spec(override: RegionOverride, scheme: ColorScheme) -> Dict[str, Any]:
    color = {"color": override.color} if override.color else color_config(scheme)
    return base_style_spec(override.style, color)


class RenderExecutor:
    def __init__(self, settle_seconds: float = VIZ_RENDER_SETTLE_SECONDS) -> None:
        self.settle_seconds = max(0.0, float(settle_seconds))

    async def render(
        self,
        engine: RenderEngine,
        surface: Surface,
        payload: ResolvedPayload,
        style: StyleOptions,
    ) -> Viewer:
        started = time.perf_counter()
        log_event(
            _LOGGER,
            logging.INFO,
            "render.started",
            representation=style.representation.value,
            payload_format=payload.format.value,
            overrides=len(style.overrides),
        )
        surface.clear()
        try:
            width, height = surface.size()
            viewer = engine.create_viewer(width, height, style.background_color)
            surface.attach(viewer)
            self._primary_pass(viewer, payload, style)
        except RenderFailed as exc:
            log_event(_LOGGER, logging.WARNING, "render.failed", error=exc.message)
            raise
        except Exception as exc:  # noqa: BLE001
            log_event(_LOGGER, logging.WARNING, "render.failed", error=str(exc))
            raise RenderFailed(f"primary style pass failed: {exc}") from exc

        if style.show_surface or style.representation == RepresentationStyle.SURFACE:
            self._secondary_pass(
                "surface",
                lambda: viewer.add_surface(style.surface_kind, style.surface_opacity, color_config(style.color_scheme)),
            )
        if style.show_labels:
            residue_level = payload.format == PayloadFormat.PDB
            self._secondary_pass("labels", lambda: viewer.add_labels(residue_level))

        try:
            viewer.fit_view()
            viewer.flush()
        except Exception as exc:  # noqa: BLE001
            log_event(_LOGGER, logging.WARNING, "render.failed", error=str(exc))
            raise RenderFailed(f"flush failed: {exc}") from exc
        # Engines finish drawing on their own frame schedule.
        if self.settle_seconds:
            await asyncio.sleep(self.settle_seconds)
        log_event(
            _LOGGER,
            logging.INFO,
            "render.completed",
            representation=style.representation.value,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return viewer

    def _primary_pass(self, viewer: Viewer, payload: ResolvedPayload, style: StyleOptions) -> None:
        viewer.load_model(payload.data, payload.format.value)
        viewer.apply_style({}, base_style_spec(style.representation, color_config(style.color_scheme)))
        skipped: List[str] = []
        for override in style.overrides:
            selection = parse_region(override.region)
            if selection is None:
                skipped.append(override.region)
                continue
            viewer.apply_style(selection, override_style_spec(override, style.color_scheme))
        if skipped:
            log_event(_LOGGER, logging.WARNING, "render.override_skipped", regions=skipped)

    def _secondary_pass(self, label: str, action: Any) -> None:
        try:
            action()
        except Exception as exc:  # noqa: BLE001
            log_event(_LOGGER, logging.WARNING, "render.secondary_pass_failed", render_pass=label, error=str(exc))
