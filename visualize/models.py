from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple


class IdentifierKind(str, enum.Enum):
    SMILES = "smiles"
    INCHI = "inchi"
    CID = "cid"
    NAME = "name"
    INCHIKEY = "inchikey"
    PDB = "pdb"


# Kinds converted in-process by the conversion toolkit; everything else is fetched.
LOCAL_KINDS = frozenset({IdentifierKind.SMILES, IdentifierKind.INCHI})


class RepresentationStyle(str, enum.Enum):
    STICK = "stick"
    SPHERE = "sphere"
    LINE = "line"
    CARTOON = "cartoon"
    SURFACE = "surface"
    BALL_STICK = "ball-stick"


class ColorScheme(str, enum.Enum):
    ELEMENT = "element"
    CHAIN = "chain"
    RESIDUE = "residue"
    SS = "ss"
    SPECTRUM = "spectrum"
    STRUCTURE = "structure"


class SurfaceKind(str, enum.Enum):
    VDW = "vdw"
    SAS = "sas"
    MS = "ms"


class PayloadFormat(str, enum.Enum):
    SDF = "sdf"
    PDB = "pdb"


def _coerce_enum(enum_cls: type[enum.Enum], value: Any, default: enum.Enum) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value or "").strip().lower())
    except ValueError:
        return default


@dataclass(frozen=True)
class RegionOverride:
    region: str
    style: RepresentationStyle = RepresentationStyle.STICK
    color: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RegionOverride":
        color = raw.get("color")
        return cls(
            region=str(raw.get("region") or "").strip(),
            style=_coerce_enum(RepresentationStyle, raw.get("style"), RepresentationStyle.STICK),
            color=str(color).strip() if color else None,
        )


@dataclass(frozen=True)
class StyleOptions:
    representation: RepresentationStyle = RepresentationStyle.STICK
    color_scheme: ColorScheme = ColorScheme.ELEMENT
    overrides: Tuple[RegionOverride, ...] = ()
    show_surface: bool = False
    surface_kind: SurfaceKind = SurfaceKind.VDW
    surface_opacity: float = 0.7
    show_labels: bool = False
    background_color: str = "white"

    @classmethod
    def build(
        cls,
        representation: Any = None,
        color_scheme: Any = None,
        overrides: Optional[Iterable[Any]] = None,
        show_surface: Any = False,
        surface_kind: Any = None,
        surface_opacity: Any = 0.7,
        show_labels: Any = False,
        background_color: Any = "white",
    ) -> "StyleOptions":
        items = []
        for item in overrides or ():
            if isinstance(item, RegionOverride):
                items.append(item)
            elif isinstance(item, dict):
                items.append(RegionOverride.from_dict(item))
        try:
            opacity = float(surface_opacity)
        except (TypeError, ValueError):
            opacity = 0.7
        return cls(
            representation=_coerce_enum(RepresentationStyle, representation, RepresentationStyle.STICK),
            color_scheme=_coerce_enum(ColorScheme, color_scheme, ColorScheme.ELEMENT),
            overrides=tuple(items),
            show_surface=bool(show_surface),
            surface_kind=_coerce_enum(SurfaceKind, surface_kind, SurfaceKind.VDW),
            surface_opacity=min(1.0, max(0.0, opacity)),
            show_labels=bool(show_labels),
            background_color=str(background_color or "white").strip() or "white",
        )


@dataclass(frozen=True)
class VisualizationRequest:
    kind: IdentifierKind
    identifier: str
    style: StyleOptions = field(default_factory=StyleOptions)
    title: Optional[str] = None
    description: Optional[str] = None

    @property
    def requires_conversion(self) -> bool:
        return self.kind in LOCAL_KINDS


@dataclass(frozen=True)
class ResolvedPayload:
    data: str
    format: PayloadFormat


@dataclass(frozen=True)
class PayloadCacheEntry:
    payload: ResolvedPayload
    resolved_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RenderCacheEntry:
    completed_at: float
    source_request: VisualizationRequest
    payload: ResolvedPayload


class InstanceStatus(str, enum.Enum):
    IDLE = "idle"
    LOADING_DEPENDENCIES = "loading_dependencies"
    RESOLVING_PAYLOAD = "resolving_payload"
    RENDERING = "rendering"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class InstanceState:
    status: InstanceStatus = InstanceStatus.IDLE
    reason: Optional[str] = None
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in {InstanceStatus.SUCCESS, InstanceStatus.ERROR}

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "reason": self.reason, "message": self.message}
