import abc
import html
from typing import Any, Optional, Tuple

from config import VIZ_SURFACE_HEIGHT, VIZ_SURFACE_WIDTH


class Surface(abc.ABC):
    """Drawable region owned by the caller; the pipeline only clears, attaches and sizes it."""

    @abc.abstractmethod
    def clear(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def attach(self, viewer: Any) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def size(self) -> Tuple[int, int]:
        raise NotImplementedError


class HtmlSurface(Surface):
    def __init__(self, width: int = VIZ_SURFACE_WIDTH, height: int = VIZ_SURFACE_HEIGHT) -> None:
        self.width = int(width)
        self.height = int(height)
        self.viewer: Optional[Any] = None

    def clear(self) -> None:
        self.viewer = None

    def attach(self, viewer: Any) -> None:
        self.viewer = viewer

    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def render_html(self, title: Optional[str] = None) -> str:
        if self.viewer is None:
            return ""
        to_html = getattr(self.viewer, "to_html", None)
        body = to_html() if callable(to_html) else ""
        if not title:
            return body
        return f"<figure><figcaption>{html.escape(title)}</figcaption>{body}</figure>"
