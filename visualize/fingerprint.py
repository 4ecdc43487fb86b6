import json
from typing import Any, List

from visualize.models import StyleOptions, VisualizationRequest


def _format_bool(value: Any) -> str:
    return "true" if bool(value) else "false"


def _format_number(value: Any, default: float) -> str:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = default
    if number != number:  # NaN
        number = default
    if number.is_integer():
        return str(int(number))
    return repr(number)


def _enum_text(value: Any) -> str:
    return str(getattr(value, "value", value) or "")


def _serialize_overrides(style: StyleOptions) -> str:
    # Order is kept as given: overrides apply last-write-wins, so order is visible.
    items: List[dict] = []
    for override in style.overrides or ():
        items.append(
            {
                "region": str(getattr(override, "region", "") or ""),
                "style": _enum_text(getattr(override, "style", "")),
                "color": getattr(override, "color", None),
            }
        )
    return json.dumps(items, separators=(",", ":"), ensure_ascii=False)


def _escape_text(value: str) -> str:
    # Free text must not introduce field separators.
    return value.replace("%", "%25").replace(":", "%3A")


def payload_key(kind: Any, identifier: str) -> str:
    return f"{_enum_text(kind)}:{identifier}"


def compute_fingerprint(request: VisualizationRequest) -> str:
    style = request.style or StyleOptions()
    parts = [
        payload_key(request.kind, _escape_text(str(request.identifier or ""))),
        _enum_text(style.representation) or "stick",
        _enum_text(style.color_scheme) or "element",
        _serialize_overrides(style),
        _format_bool(style.show_surface),
        _enum_text(style.surface_kind) or "vdw",
        _format_number(style.surface_opacity, 0.7),
        _format_bool(style.show_labels),
        _escape_text(str(style.background_color or "white")),
    ]
    return ":".join(parts)


