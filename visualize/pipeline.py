from dataclasses import dataclass, field
from typing import Optional

from config import VIZ_RENDER_ENGINE
from visualize.executor import RenderExecutor
from visualize.loader import DependencyLoader, get_dependency_loader
from visualize.resolver import PayloadResolver
from visualize.store import PayloadCache, RenderCache, get_payload_cache, get_render_cache


@dataclass
class VisualizationPipeline:
    """Process-wide collaborators shared by every visualization instance."""

    loader: DependencyLoader
    resolver: PayloadResolver
    executor: RenderExecutor = field(default_factory=RenderExecutor)
    render_cache: RenderCache = field(default_factory=get_render_cache)
    render_dependency: str = VIZ_RENDER_ENGINE

    @property
    def payload_cache(self) -> PayloadCache:
        return self.resolver.cache


_PIPELINE: Optional[VisualizationPipeline] = None


def get_pipeline() -> VisualizationPipeline:
    global _PIPELINE
    if _PIPELINE is None:
        loader = get_dependency_loader()
        resolver = PayloadResolver(loader=loader, cache=get_payload_cache())
        _PIPELINE = VisualizationPipeline(loader=loader, resolver=resolver)
    return _PIPELINE


def reset_pipeline() -> None:
    global _PIPELINE
    _PIPELINE = None
