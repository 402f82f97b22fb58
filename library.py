"""
Library storage for Bookshelf.
Holds the book records (title, format, highlights, last-read position) and
persists the whole collection as a single JSON document.
"""

import json
import logging
import os
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("pdf", "epub")


def utc_now() -> str:
    """ISO-8601 timestamp in UTC, millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_id() -> str:
    """Generate a unique book ID."""
    return str(uuid.uuid4())


class LibraryStoreError(Exception):
    """The library file exists but could not be read or written."""


class BookNotFoundError(LookupError):
    """No book with the requested ID."""

    def __init__(self, book_id: str):
        super().__init__(f"Book not found: {book_id}")
        self.book_id = book_id


@dataclass
class LastRead:
    """Where the reader left off: a page number (PDF) or a CFI (EPUB)."""
    position: Any
    timestamp: str = field(default_factory=utc_now)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({"position": self.position, "timestamp": self.timestamp})
        return data

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["LastRead"]:
        """None for anything that isn't an object with a position."""
        if not isinstance(raw, dict) or "position" not in raw:
            return None
        return cls(
            position=raw["position"],
            timestamp=raw.get("timestamp") or "",
            extra={k: v for k, v in raw.items() if k not in ("position", "timestamp")},
        )


@dataclass
class Book:
    """One uploaded file and everything we know about it."""
    id: str
    title: str
    filename: str        # stored name under the upload dir
    original_name: str   # name the client sent
    format: str          # pdf | epub
    uploaded_at: str = field(default_factory=utc_now)
    highlights: List[Dict[str, Any]] = field(default_factory=list)
    last_read: Optional[LastRead] = None
    author: Optional[str] = None
    # Keys we don't model are kept so a rewrite never drops them
    extra: Dict[str, Any] = field(default_factory=dict)

    def add_highlight(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Append a highlight, stamping it with createdAt."""
        highlight = dict(payload)
        highlight["createdAt"] = utc_now()
        self.highlights.append(highlight)
        return highlight

    def set_progress(self, position: Any) -> LastRead:
        self.last_read = LastRead(position=position)
        return self.last_read

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "title": self.title,
            "filename": self.filename,
            "originalName": self.original_name,
            "format": self.format,
            "uploadedAt": self.uploaded_at,
            "highlights": self.highlights,
        })
        if self.author:
            data["author"] = self.author
        if self.last_read is not None:
            data["lastRead"] = self.last_read.to_dict()
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Book":
        known = {
            "id", "title", "filename", "originalName", "format",
            "uploadedAt", "highlights", "lastRead", "author",
        }
        return cls(
            id=raw["id"],
            title=raw.get("title") or raw.get("originalName") or raw["filename"],
            filename=raw["filename"],
            original_name=raw.get("originalName", raw["filename"]),
            format=raw.get("format", "pdf"),
            uploaded_at=raw.get("uploadedAt", ""),
            highlights=list(raw.get("highlights") or []),
            last_read=LastRead.from_dict(raw.get("lastRead")),
            author=raw.get("author"),
            extra={k: v for k, v in raw.items() if k not in known},
        )


class LibraryStore:
    """
    Storage interface the routes depend on.
    Subclasses only need load() and save(); the rest is read-modify-write on top.
    """

    def __init__(self):
        self._lock = threading.RLock()

    def load(self) -> List[Book]:
        raise NotImplementedError

    def save(self, books: List[Book]):
        raise NotImplementedError

    def find(self, book_id: str) -> Optional[Book]:
        """Linear scan by ID."""
        for book in self.load():
            if book.id == book_id:
                return book
        return None

    def get(self, book_id: str) -> Book:
        book = self.find(book_id)
        if book is None:
            raise BookNotFoundError(book_id)
        return book

    def add(self, book: Book) -> Book:
        with self._lock:
            books = self.load()
            if any(b.id == book.id for b in books):
                raise LibraryStoreError(f"Duplicate book id: {book.id}")
            books.append(book)
            self.save(books)
        return book

    def update(self, book_id: str, mutate: Callable[[Book], Any]) -> Book:
        """Apply mutate() to one book and persist the whole collection."""
        with self._lock:
            books = self.load()
            for book in books:
                if book.id == book_id:
                    mutate(book)
                    self.save(books)
                    return book
        raise BookNotFoundError(book_id)

    def remove(self, book_id: str) -> Book:
        with self._lock:
            books = self.load()
            for index, book in enumerate(books):
                if book.id == book_id:
                    del books[index]
                    self.save(books)
                    return book
        raise BookNotFoundError(book_id)


class JsonLibraryStore(LibraryStore):
    """The whole library as one pretty-printed JSON array."""

    def __init__(self, data_file: str):
        super().__init__()
        self.data_file = data_file

    def _ensure_dir(self):
        data_dir = os.path.dirname(os.path.abspath(self.data_file))
        if not os.path.exists(data_dir):
            os.makedirs(data_dir, exist_ok=True)

    def load(self) -> List[Book]:
        if not os.path.exists(self.data_file):
            return []

        try:
            with open(self.data_file, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Error loading library %s: %s", self.data_file, e)
            raise LibraryStoreError(f"Could not read {self.data_file}: {e}") from e

        if not isinstance(raw, list):
            raise LibraryStoreError(f"{self.data_file} does not contain a list of books")

        try:
            return [Book.from_dict(item) for item in raw]
        except (KeyError, TypeError) as e:
            raise LibraryStoreError(f"Malformed book record in {self.data_file}: {e}") from e

    def save(self, books: List[Book]):
        """Write to a temp file next to the target, then swap it in."""
        self._ensure_dir()
        data = [book.to_dict() for book in books]
        data_dir = os.path.dirname(os.path.abspath(self.data_file))

        fd, tmp_path = tempfile.mkstemp(dir=data_dir, prefix=".library-", suffix=".json")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.data_file)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            logger.error("Error saving library %s: %s", self.data_file, e)
            raise LibraryStoreError(f"Could not write {self.data_file}: {e}") from e


# Export

def export_book_data(book: Book, format: str = 'json') -> str:
    """Export highlights and reading progress for a book."""
    export_data = {
        'book_id': book.id,
        'title': book.title,
        'format': book.format,
        'exported_at': utc_now(),
        'last_read': book.to_dict().get('lastRead'),
        'highlights': book.highlights,
    }

    if format == 'markdown':
        return _to_markdown(export_data)
    return json.dumps(export_data, indent=2, ensure_ascii=False)


def _to_markdown(data: dict) -> str:
    """Convert export data to Markdown format."""
    lines = [
        f"# {data['title']}",
        "",
        f"**Book ID:** {data['book_id']}",
        f"**Exported:** {data['exported_at']}",
    ]
    if data['last_read']:
        lines.append(f"**Last read:** {data['last_read']['position']} "
                     f"({data['last_read']['timestamp']})")
    lines.append("")

    bookmarks = [h for h in data['highlights'] if h.get('type') == 'bookmark']
    highlights = [h for h in data['highlights'] if h.get('type') != 'bookmark']

    if bookmarks:
        lines.append("## Bookmarks")
        lines.append("")
        for b in bookmarks:
            lines.append(f"- Page {b.get('page', '?')} *({b.get('createdAt', '')})*")
        lines.append("")

    if highlights:
        lines.append("## Highlights")
        lines.append("")
        for h in highlights:
            location = h.get('cfiRange') or h.get('page') or '?'
            lines.append(f"- `{location}` ({h.get('color', 'yellow')}) *{h.get('createdAt', '')}*")
            if h.get('text'):
                lines.append(f"  > {h['text']}")
        lines.append("")

    return "\n".join(lines)
