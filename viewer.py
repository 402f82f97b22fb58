"""
Parameters handed to the browser viewers (templates/reader.html).
The viewers themselves live in static/js; this module decides what they
start with: which file, where to resume, which highlights to re-apply and
how hard to retry when saving progress.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Union

from library import Book


@dataclass(frozen=True)
class ZoomPolicy:
    """Zoom limits. PDF zooms the canvas scale, EPUB the font size (%)."""
    step: float
    minimum: float
    initial: float


PDF_ZOOM = ZoomPolicy(step=0.1, minimum=0.5, initial=1.0)
EPUB_ZOOM = ZoomPolicy(step=10, minimum=50, initial=100)

HIGHLIGHT_COLOR = "yellow"


@dataclass
class SavePolicy:
    """How the viewers retry progress/highlight posts before giving up."""
    retries: int = 2
    backoff_ms: int = 500


@dataclass
class ViewerParams:
    book_id: str
    format: str
    title: str
    file_url: str
    resume_position: Optional[Union[int, str]]
    highlights: List[Dict[str, Any]] = field(default_factory=list)
    zoom: ZoomPolicy = PDF_ZOOM
    save_policy: SavePolicy = field(default_factory=SavePolicy)
    highlight_color: str = HIGHLIGHT_COLOR

    def to_js(self) -> Dict[str, Any]:
        """camelCase dict for the template's tojson."""
        return {
            "bookId": self.book_id,
            "format": self.format,
            "title": self.title,
            "fileUrl": self.file_url,
            "lastRead": self.resume_position,
            "highlights": self.highlights,
            "zoom": asdict(self.zoom),
            "savePolicy": {
                "retries": self.save_policy.retries,
                "backoffMs": self.save_policy.backoff_ms,
            },
            "highlightColor": self.highlight_color,
        }


def resume_position(fmt: str, position: Any) -> Optional[Union[int, str]]:
    """
    Normalise a saved lastRead position for the viewer.
    PDF wants a page number >= 1 (numeric strings are accepted), EPUB a CFI
    string. Anything else means "start from the beginning".
    """
    if position is None or isinstance(position, bool):
        return None

    if fmt == "pdf":
        if isinstance(position, float) and position.is_integer():
            position = int(position)
        elif isinstance(position, str) and position.strip().isdigit():
            position = int(position.strip())
        if isinstance(position, int) and position >= 1:
            return position
        return None

    if isinstance(position, str) and position.strip():
        return position.strip()
    return None


def build_viewer_params(book: Book, file_url: str,
                        save_policy: Optional[SavePolicy] = None) -> ViewerParams:
    position = book.last_read.position if book.last_read else None
    return ViewerParams(
        book_id=book.id,
        format=book.format,
        title=book.title,
        file_url=file_url,
        resume_position=resume_position(book.format, position),
        highlights=list(book.highlights),
        zoom=PDF_ZOOM if book.format == "pdf" else EPUB_ZOOM,
        save_policy=save_policy or SavePolicy(),
    )
