"""Tests for the library module."""

import json
import os
import threading

import pytest

from library import (
    Book,
    BookNotFoundError,
    JsonLibraryStore,
    LastRead,
    LibraryStoreError,
    export_book_data,
    generate_id,
)


def make_book(**kwargs):
    fields = dict(
        id=generate_id(),
        title="Test Book",
        filename="1700000000000-42.pdf",
        original_name="test.pdf",
        format="pdf",
    )
    fields.update(kwargs)
    return Book(**fields)


@pytest.fixture
def data_file(tmp_path):
    return str(tmp_path / "data" / "library.json")


@pytest.fixture
def store(data_file):
    return JsonLibraryStore(data_file)


class TestJsonLibraryStore:
    """Tests for JsonLibraryStore."""

    def test_missing_file_is_empty_library(self, store, data_file):
        assert store.load() == []
        assert not os.path.exists(data_file)

    def test_save_and_load(self, data_file):
        store = JsonLibraryStore(data_file)
        store.add(make_book(id="b1", title="One"))
        store.add(make_book(id="b2", title="Two"))

        # A new store sees the same data
        books = JsonLibraryStore(data_file).load()
        assert [b.id for b in books] == ["b1", "b2"]
        assert books[0].title == "One"

    def test_file_is_a_json_array_with_camel_case_keys(self, store, data_file):
        store.add(make_book(id="b1"))
        with open(data_file, encoding="utf-8") as f:
            raw = json.load(f)

        assert isinstance(raw, list)
        assert raw[0]["originalName"] == "test.pdf"
        assert "uploadedAt" in raw[0]
        assert raw[0]["highlights"] == []

    def test_no_temp_files_left_behind(self, store, data_file):
        store.add(make_book())
        store.add(make_book())
        assert os.listdir(os.path.dirname(data_file)) == ["library.json"]

    def test_find(self, store):
        store.add(make_book(id="b1"))
        assert store.find("b1").id == "b1"
        assert store.find("missing") is None

    def test_get_missing_raises(self, store):
        with pytest.raises(BookNotFoundError):
            store.get("missing")

    def test_duplicate_id_rejected(self, store):
        store.add(make_book(id="b1"))
        with pytest.raises(LibraryStoreError):
            store.add(make_book(id="b1"))

    def test_update(self, store):
        store.add(make_book(id="b1"))
        updated = store.update("b1", lambda b: b.set_progress(9))

        assert updated.last_read.position == 9
        assert store.find("b1").last_read.position == 9

    def test_update_missing_raises(self, store):
        with pytest.raises(BookNotFoundError):
            store.update("missing", lambda b: None)

    def test_remove(self, store):
        store.add(make_book(id="b1"))
        store.add(make_book(id="b2"))

        removed = store.remove("b1")
        assert removed.id == "b1"
        assert [b.id for b in store.load()] == ["b2"]

    def test_remove_missing_raises(self, store):
        with pytest.raises(BookNotFoundError):
            store.remove("missing")

    def test_corrupt_file_raises(self, store, data_file):
        os.makedirs(os.path.dirname(data_file))
        with open(data_file, "w") as f:
            f.write("[{broken")
        with pytest.raises(LibraryStoreError):
            store.load()

    def test_non_list_file_raises(self, store, data_file):
        os.makedirs(os.path.dirname(data_file))
        with open(data_file, "w") as f:
            json.dump({"books": []}, f)
        with pytest.raises(LibraryStoreError):
            store.load()

    def test_unknown_keys_survive_rewrite(self, store, data_file):
        os.makedirs(os.path.dirname(data_file))
        record = make_book(id="b1").to_dict()
        record["rating"] = 5
        with open(data_file, "w") as f:
            json.dump([record], f)

        store.update("b1", lambda b: b.set_progress(3))
        with open(data_file) as f:
            assert json.load(f)[0]["rating"] == 5

    def test_unknown_last_read_keys_survive_rewrite(self, store, data_file):
        os.makedirs(os.path.dirname(data_file))
        odd = make_book(id="a").to_dict()
        odd["lastRead"] = {"position": 3, "timestamp": "t", "percent": 0.4}
        with open(data_file, "w") as f:
            json.dump([odd, make_book(id="b").to_dict()], f)

        assert store.find("a").last_read.position == 3
        store.update("b", lambda b: b.set_progress(8))

        with open(data_file) as f:
            raw = json.load(f)
        assert raw[0]["lastRead"] == {"position": 3, "timestamp": "t", "percent": 0.4}
        assert raw[1]["lastRead"]["position"] == 8

    @pytest.mark.parametrize("last_read", ["page 3", 7, [], {"timestamp": "t"}])
    def test_unusable_last_read_is_treated_as_absent(self, store, data_file, last_read):
        os.makedirs(os.path.dirname(data_file))
        record = make_book(id="a").to_dict()
        record["lastRead"] = last_read
        with open(data_file, "w") as f:
            json.dump([record], f)

        assert store.find("a").last_read is None

    def test_concurrent_adds_all_persist(self, store):
        def worker(n):
            store.add(make_book(title=f"Book {n}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.load()) == 20


class TestBook:
    """Tests for the Book record."""

    def test_add_highlight_stamps_created_at(self):
        book = make_book()
        h = book.add_highlight({"cfiRange": "epubcfi(/6/2)", "color": "yellow"})

        assert h["cfiRange"] == "epubcfi(/6/2)"
        assert "createdAt" in h
        assert book.highlights == [h]

    def test_add_highlight_copies_payload(self):
        book = make_book()
        payload = {"page": 1}
        book.add_highlight(payload)
        assert "createdAt" not in payload

    def test_set_progress(self):
        book = make_book()
        book.set_progress("epubcfi(/6/4)")
        assert book.last_read.position == "epubcfi(/6/4)"
        assert book.last_read.timestamp

    def test_round_trip_preserves_last_read(self):
        book = make_book(last_read=LastRead(position=4, timestamp="2024-01-01T00:00:00.000Z"))
        again = Book.from_dict(book.to_dict())
        assert again.last_read == book.last_read

    def test_from_dict_defaults(self):
        book = Book.from_dict({"id": "x", "filename": "1-2.epub", "format": "epub"})
        assert book.title == "1-2.epub"
        assert book.original_name == "1-2.epub"
        assert book.highlights == []
        assert book.last_read is None

    def test_generate_id_unique(self):
        ids = {generate_id() for _ in range(100)}
        assert len(ids) == 100


class TestExport:
    """Tests for export_book_data."""

    def test_json_export(self):
        book = make_book(title="Dune")
        book.add_highlight({"page": 2, "type": "bookmark"})
        data = json.loads(export_book_data(book, "json"))

        assert data["book_id"] == book.id
        assert data["title"] == "Dune"
        assert data["last_read"] is None
        assert len(data["highlights"]) == 1

    def test_markdown_export_sections(self):
        book = make_book(title="Dune", format="epub")
        book.add_highlight({"page": 7, "type": "bookmark"})
        book.add_highlight({"cfiRange": "epubcfi(/6/2)", "color": "yellow", "type": "highlight"})
        book.set_progress("epubcfi(/6/2)")

        md = export_book_data(book, "markdown")
        assert md.startswith("# Dune")
        assert "## Bookmarks" in md
        assert "Page 7" in md
        assert "## Highlights" in md
        assert "epubcfi(/6/2)" in md
        assert "**Last read:**" in md

    def test_markdown_export_empty(self):
        md = export_book_data(make_book(title="Empty"), "markdown")
        assert "## Highlights" not in md
        assert "## Bookmarks" not in md
