"""
Handles the uploaded PDF/EPUB binaries: validation, naming, storage on disk
and a best-effort peek at the embedded title/author.
Rendering is left entirely to the browser (pdf.js / epub.js).
"""

import logging
import os
import random
import shutil
import time
from typing import BinaryIO, Optional, Tuple

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".pdf": "pdf", ".epub": "epub"}


class UnsupportedFileError(ValueError):
    """Upload is neither a PDF nor an EPUB."""

    def __init__(self, message: str = "Only PDF and EPUB files are allowed!"):
        super().__init__(message)


def validate_upload(filename: Optional[str], content_type: Optional[str]) -> str:
    """
    Checks both the extension and the declared MIME type.
    Returns the book format ('pdf' or 'epub').
    """
    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise UnsupportedFileError()

    # Browsers send application/pdf, application/epub+zip, application/x-pdf...
    mime = (content_type or "").lower()
    if "pdf" not in mime and "epub" not in mime:
        raise UnsupportedFileError()

    return ALLOWED_EXTENSIONS[ext]


def make_stored_filename(original_name: str) -> str:
    """<epoch-ms>-<random><ext>, e.g. 1718000000000-123456789.pdf"""
    ext = os.path.splitext(original_name)[1].lower()
    unique_suffix = f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}"
    return unique_suffix + ext


def store_upload(fileobj: BinaryIO, upload_dir: str, original_name: str) -> str:
    """Copy an upload stream into upload_dir. Returns the stored filename."""
    os.makedirs(upload_dir, exist_ok=True)

    while True:
        stored_name = make_stored_filename(original_name)
        path = os.path.join(upload_dir, stored_name)
        try:
            # 'xb' so two uploads can never land on the same file
            with open(path, 'xb') as out:
                shutil.copyfileobj(fileobj, out)
            return stored_name
        except FileExistsError:
            continue
        except BaseException:
            # No half-written files in the upload dir
            if os.path.exists(path):
                os.remove(path)
            raise


def book_file_path(upload_dir: str, filename: str) -> str:
    # Stored names never contain separators; basename keeps it that way
    return os.path.join(upload_dir, os.path.basename(filename))


def remove_book_file(upload_dir: str, filename: str) -> bool:
    """Delete a stored binary. Returns False if it was already gone."""
    path = book_file_path(upload_dir, filename)
    if not os.path.exists(path):
        return False
    os.remove(path)
    return True


def read_pdf_metadata(path: str) -> Tuple[Optional[str], Optional[str]]:
    import fitz  # PyMuPDF

    with fitz.open(path) as doc:
        metadata = doc.metadata or {}
    return metadata.get('title') or None, metadata.get('author') or None


def read_epub_metadata(path: str) -> Tuple[Optional[str], Optional[str]]:
    from ebooklib import epub

    book_obj = epub.read_epub(path)

    def get_one(key):
        data = book_obj.get_metadata('DC', key)
        return data[0][0] if data else None

    return get_one('title'), get_one('creator')


def read_embedded_metadata(path: str, fmt: str) -> Tuple[Optional[str], Optional[str]]:
    """
    (title, author) declared inside the document, or (None, None) when the
    file can't be parsed. A broken file is still accepted into the library;
    the browser engine gets the final say on whether it renders.
    """
    try:
        if fmt == "pdf":
            title, author = read_pdf_metadata(path)
        else:
            title, author = read_epub_metadata(path)
    except Exception as e:
        logger.warning("Could not read metadata from %s: %s", path, e)
        return None, None

    title = title.strip() if isinstance(title, str) else None
    author = author.strip() if isinstance(author, str) else None
    return title or None, author or None
