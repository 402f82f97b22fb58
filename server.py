import logging
import os
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import (
    HTMLResponse,
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
)
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from book_files import (
    UnsupportedFileError,
    book_file_path,
    read_embedded_metadata,
    remove_book_file,
    store_upload,
    validate_upload,
)
from library import (
    Book,
    BookNotFoundError,
    JsonLibraryStore,
    LibraryStore,
    LibraryStoreError,
    export_book_data,
    generate_id,
)
from settings import Settings
from viewer import SavePolicy, build_viewer_params

logger = logging.getLogger(__name__)

base_resource_path = os.path.dirname(os.path.abspath(__file__))
templates_dir = os.path.join(base_resource_path, "templates")
static_dir = os.path.join(base_resource_path, "static")
templates = Jinja2Templates(directory=templates_dir)

router = APIRouter()


def get_store(request: Request) -> LibraryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_book_or_404(store: LibraryStore, book_id: str) -> Book:
    """Look up a book by ID, or raise HTTPException(404)."""
    book = store.find(book_id)
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


async def read_json_body(request: Request) -> dict:
    """Parse a JSON object body; anything else is a 400."""
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


def file_url_for(book: Book) -> str:
    return "/uploads/" + quote(book.filename)


@router.get("/", response_class=HTMLResponse)
async def library_view(request: Request):
    """Lists all uploaded books."""
    books = get_store(request).load()
    return templates.TemplateResponse(
        request, "library.html", {"books": [b.to_dict() for b in books]}
    )


@router.post("/upload")
def upload_book(
    request: Request,
    bookFile: UploadFile = File(...),
    title: Optional[str] = Form(None),
):
    """
    Handle PDF/EPUB uploads.
    Plain def: copying and parsing the file runs in the threadpool.
    """
    settings = get_settings(request)
    store = get_store(request)

    try:
        fmt = validate_upload(bookFile.filename, bookFile.content_type)
    except UnsupportedFileError as e:
        logger.info("Rejected upload %r (%s)", bookFile.filename, bookFile.content_type)
        raise HTTPException(status_code=400, detail=str(e))

    original_name = os.path.basename(bookFile.filename)
    stored_name = store_upload(bookFile.file, settings.upload_dir, original_name)
    embedded_title, author = read_embedded_metadata(
        book_file_path(settings.upload_dir, stored_name), fmt
    )

    book = Book(
        id=generate_id(),
        title=(title or "").strip() or embedded_title or original_name,
        filename=stored_name,
        original_name=original_name,
        format=fmt,
        author=author,
    )

    try:
        store.add(book)
    except LibraryStoreError:
        # Don't leave an orphaned binary behind
        remove_book_file(settings.upload_dir, stored_name)
        raise

    logger.info("Uploaded %s as %s (%s)", original_name, stored_name, book.id)
    return RedirectResponse(url="/", status_code=303)


@router.get("/book/{book_id}", response_class=HTMLResponse)
async def reader_view(request: Request, book_id: str):
    """The viewer page for one book."""
    book = get_store(request).find(book_id)
    if book is None:
        return PlainTextResponse("Book not found", status_code=404)

    settings = get_settings(request)
    params = build_viewer_params(
        book,
        file_url_for(book),
        SavePolicy(retries=settings.save_retries, backoff_ms=settings.save_backoff_ms),
    )
    return templates.TemplateResponse(
        request,
        "reader.html",
        {"book": book.to_dict(), "viewer": params.to_js()},
    )


# ============================================================================
# Book API
# ============================================================================


@router.get("/api/books")
async def list_books(request: Request):
    """All book records, in upload order."""
    return [b.to_dict() for b in get_store(request).load()]


@router.get("/api/book/{book_id}")
async def get_book(request: Request, book_id: str):
    return get_book_or_404(get_store(request), book_id).to_dict()


@router.delete("/api/book/{book_id}")
async def delete_book(request: Request, book_id: str):
    """Removes the record and its stored file."""
    store = get_store(request)
    book = get_book_or_404(store, book_id)

    remove_book_file(get_settings(request).upload_dir, book.filename)
    store.remove(book_id)

    logger.info("Deleted %s (%s)", book.title, book_id)
    return {"success": True}


# ============================================================================
# Highlights & Progress API
# ============================================================================


@router.get("/api/book/{book_id}/highlights")
async def get_highlights(request: Request, book_id: str):
    book = get_book_or_404(get_store(request), book_id)
    return {"book_id": book.id, "highlights": book.highlights}


@router.post("/api/book/{book_id}/highlight")
async def add_highlight(request: Request, book_id: str):
    """
    Append one highlight: { highlight: {cfiRange|page, color, type, ...} }.
    Repeats are kept; there is no de-duplication.
    """
    store = get_store(request)
    book = get_book_or_404(store, book_id)
    data = await read_json_body(request)

    highlight = data.get("highlight")
    if highlight and not isinstance(highlight, dict):
        raise HTTPException(status_code=400, detail="highlight must be an object")

    if highlight:
        book = store.update(book_id, lambda b: b.add_highlight(highlight))

    return {"success": True, "highlights": book.highlights}


@router.post("/api/book/{book_id}/progress")
async def save_progress(request: Request, book_id: str):
    """Overwrite lastRead with { position } (page number or CFI)."""
    store = get_store(request)
    get_book_or_404(store, book_id)
    data = await read_json_body(request)

    position = data.get("position")
    if position is not None and position != "":
        store.update(book_id, lambda b: b.set_progress(position))

    return {"success": True}


# ============================================================================
# Export API
# ============================================================================


@router.get("/api/book/{book_id}/export")
async def export_book(request: Request, book_id: str, format: str = "json"):
    """Export highlights and progress for a book."""
    if format not in ["json", "markdown"]:
        raise HTTPException(
            status_code=400, detail="Format must be 'json' or 'markdown'"
        )

    book = get_book_or_404(get_store(request), book_id)
    content = export_book_data(book, format)

    if format == "markdown":
        return PlainTextResponse(
            content,
            media_type="text/markdown",
            headers={"Content-Disposition": f"attachment; filename={book_id}_notes.md"},
        )
    return PlainTextResponse(
        content,
        media_type="application/json",
        headers={"Content-Disposition": f"attachment; filename={book_id}_notes.json"},
    )


# ============================================================================
# App factory
# ============================================================================


async def book_not_found_handler(request: Request, exc: BookNotFoundError):
    # Book vanished between lookup and write (e.g. deleted in another tab)
    return JSONResponse(status_code=404, content={"detail": "Book not found"})


async def library_error_handler(request: Request, exc: LibraryStoreError):
    logger.error("Library store failure on %s %s: %s",
                 request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": f"Library error: {exc}"})


def create_app(settings: Optional[Settings] = None,
               store: Optional[LibraryStore] = None) -> FastAPI:
    """Build the app around a settings object and a library store."""
    settings = settings or Settings.from_env()
    settings.ensure_dirs()

    app = FastAPI(title="Bookshelf")
    app.state.settings = settings
    app.state.store = store or JsonLibraryStore(settings.data_file)

    app.mount("/static", StaticFiles(directory=static_dir), name="static")
    app.mount("/uploads", StaticFiles(directory=settings.upload_dir), name="uploads")
    app.include_router(router)

    app.add_exception_handler(BookNotFoundError, book_not_found_handler)
    app.add_exception_handler(LibraryStoreError, library_error_handler)

    logger.info("Library file: %s", os.path.abspath(settings.data_file))
    logger.info("Upload directory: %s", os.path.abspath(settings.upload_dir))
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=app.state.settings.log_level)
    logger.info("Starting server at http://%s:%s", app.state.settings.host, app.state.settings.port)
    uvicorn.run(app, host=app.state.settings.host, port=app.state.settings.port)
