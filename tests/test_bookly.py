"""
Tests for the Bookly entry points and command line.
"""

import os

import pytest

from book_errors import ContainerUnavailable, CorruptContainer
from bookly import (
    EPUB,
    RTF,
    TXT,
    detect_format,
    extract_cover_image,
    get_chapters,
    load_chapter,
    load_document,
    main,
    open_book,
    parse_rtf,
    parse_txt,
    render_book_chapter,
    render_container,
)
from chapter_render import (
    BOOK_OPEN_ERROR,
    CHAPTER_ENCODING_ERROR,
    CHAPTER_NOT_FOUND,
    END_OF_BOOK,
    FILE_OPEN_ERROR,
    TEXT_READ_ERROR,
)
from conftest import JPEG_BYTES, chapter_html, remove_member
from containers import BookContainer
from reader_config import ReaderConfig


class TestDetectFormat:

    @pytest.mark.parametrize("reference,expected", [
        ("book.epub", EPUB),
        ("BOOK.EPUB", EPUB),
        ("notes.rtf", RTF),
        ("notes.txt", TXT),
        ("file:///tmp/notes.txt", TXT),
        ("content://docs/notes.rtf", RTF),
    ])
    def test_by_extension(self, reference, expected):
        assert detect_format(reference) == expected

    def test_unknown_defaults_to_epub(self):
        assert detect_format("mystery") == EPUB

    def test_sniffs_rtf(self):
        assert detect_format("mystery", b"{\\rtf1 hi}") == RTF

    def test_sniffs_zip(self):
        assert detect_format("mystery", b"PK\x03\x04rest") == EPUB

    def test_extension_wins_over_content(self):
        assert detect_format("notes.txt", b"{\\rtf1 hi}") == TXT


class TestGetChapters:
    """Tests for chapter listing."""

    def test_spine_order(self, sample_epub, epub_file):
        path = epub_file(sample_epub)
        assert get_chapters(path) == ["ch1.xhtml", "text/ch2.xhtml"]

    def test_stable_across_opens(self, sample_epub, epub_file):
        path = epub_file(sample_epub)
        assert get_chapters(path) == get_chapters(path)

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ContainerUnavailable):
            get_chapters(str(tmp_path / "missing.epub"))

    def test_corrupt_file_raises(self, epub_file):
        path = epub_file(b"<?xml version='1.0'?><not-a-zip/>")
        with pytest.raises(CorruptContainer):
            get_chapters(path)

    def test_resolver_reference(self, sample_epub):
        chapters = get_chapters("content://books/7", resolver=lambda ref: sample_epub)
        assert len(chapters) == 2


class TestLoadChapter:
    """Tests for single-chapter rendering."""

    def test_first_chapter(self, sample_epub, epub_file):
        html = load_chapter(epub_file(sample_epub), 0)
        assert "<h1>One</h1>" in html
        assert "data:image/png;base64," in html

    def test_nested_chapter_image(self, sample_epub, epub_file):
        html = load_chapter(epub_file(sample_epub), 1)
        assert "Second" in html
        assert "data:image/jpeg;base64," in html

    @pytest.mark.parametrize("index", [2, 99, -1])
    def test_out_of_range_is_end_of_book(self, sample_epub, epub_file, index):
        assert load_chapter(epub_file(sample_epub), index) == END_OF_BOOK

    def test_missing_book(self, tmp_path):
        assert load_chapter(str(tmp_path / "missing.epub"), 0) == BOOK_OPEN_ERROR

    def test_corrupt_book(self, epub_file):
        assert load_chapter(epub_file(b"garbage bytes"), 0) == BOOK_OPEN_ERROR

    def test_undecodable_chapter(self, make_epub, epub_file):
        data = make_epub(chapters=[
            ("good.xhtml", chapter_html("<p>fine</p>")),
            ("bad.xhtml", b"<html><body><p>\xff\xfe broken</p></body></html>"),
        ])
        path = epub_file(data)
        assert load_chapter(path, 1) == CHAPTER_ENCODING_ERROR
        assert "fine" in load_chapter(path, 0)

    def test_same_output_every_time(self, sample_epub, epub_file):
        path = epub_file(sample_epub)
        assert load_chapter(path, 0) == load_chapter(path, 0)


class TestRenderBookChapter:

    def test_render_from_model(self, sample_epub):
        model = open_book("content://x", resolver=lambda ref: sample_epub)
        assert "First" in render_book_chapter(model, 0)
        assert render_book_chapter(model, 2) == END_OF_BOOK

    def test_missing_chapter_file(self, sample_epub):
        """A chapter absent from the archive shows the not-found fragment."""
        data = remove_member(sample_epub, "OEBPS/ch1.xhtml")
        model = open_book("content://x", resolver=lambda ref: data)
        assert render_book_chapter(model, 0) == CHAPTER_NOT_FOUND
        assert "Second" in render_book_chapter(model, 1)

    def test_missing_image_file(self, sample_epub):
        data = remove_member(sample_epub, "OEBPS/images/pic.png")
        model = open_book("content://x", resolver=lambda ref: data)
        html = render_book_chapter(model, 0)
        assert "First" in html
        assert 'src="images/pic.png"' in html

    def test_unresolvable_spine_entry_keeps_indices(self, make_epub):
        data = make_epub(
            chapters=[("ch1.xhtml", chapter_html("<p>one</p>")), ("ch2.xhtml", chapter_html("<p>two</p>"))],
            extra_spine=["ghost"],
        )
        model = open_book("content://x", resolver=lambda ref: data)
        assert "two" in render_book_chapter(model, 1)
        assert render_book_chapter(model, 2) == CHAPTER_NOT_FOUND
        assert render_book_chapter(model, 3) == END_OF_BOOK


class TestExtractCoverImage:
    """Tests for the cover entry point."""

    def test_writes_cover_under_title(self, sample_epub, epub_file, tmp_path):
        dest = str(tmp_path / "covers")
        path = extract_cover_image(epub_file(sample_epub), "My Book (1)", dest)
        assert path == os.path.join(dest, "My_Book__1__cover.jpg")
        with open(path, "rb") as f:
            assert f.read() == JPEG_BYTES

    def test_title_defaults_to_metadata(self, sample_epub, epub_file, tmp_path):
        path = extract_cover_image(epub_file(sample_epub), dest_dir=str(tmp_path))
        assert os.path.basename(path) == "Test_Book_cover.jpg"

    def test_configured_covers_dir(self, sample_epub, epub_file, tmp_path):
        config = ReaderConfig(covers_dir=str(tmp_path / "thumbs"))
        path = extract_cover_image(epub_file(sample_epub), "T", config=config)
        assert path == os.path.join(str(tmp_path / "thumbs"), "T_cover.jpg")

    def test_no_cover(self, make_epub, epub_file, tmp_path):
        data = make_epub(chapters=[("ch1.xhtml", chapter_html("<p>x</p>"))])
        assert extract_cover_image(epub_file(data), "T", str(tmp_path)) is None

    def test_corrupt_book_raises(self, epub_file, tmp_path):
        with pytest.raises(CorruptContainer):
            extract_cover_image(epub_file(b"garbage"), "T", str(tmp_path))


class TestParseTxt:
    """Tests for plain-text files."""

    def test_escaped_and_preformatted(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_bytes(b"1 < 2\n  indented")
        html = parse_txt(str(path))
        assert "<pre>1 &lt; 2\n  indented</pre>" in html

    def test_missing_file(self, tmp_path):
        assert parse_txt(str(tmp_path / "missing.txt")) == FILE_OPEN_ERROR

    def test_undecodable(self, tmp_path):
        path = tmp_path / "bad.txt"
        path.write_bytes(b"ok \xc3\x28 bad")
        assert parse_txt(str(path)) == TEXT_READ_ERROR

    def test_configured_encoding(self, tmp_path):
        path = tmp_path / "latin.txt"
        path.write_bytes("café".encode("latin-1"))
        html = parse_txt(str(path), config=ReaderConfig(text_encoding="latin-1"))
        assert "café" in html


class TestParseRtf:

    def test_converts(self, tmp_path):
        path = tmp_path / "doc.rtf"
        path.write_bytes(rb"{\rtf1 Hello\par \b World\b0}")
        html = parse_rtf(str(path))
        assert "Hello<br><br><b>World</b>" in html
        assert "max-width: 100% !important" in html

    def test_missing_file(self, tmp_path):
        assert parse_rtf(str(tmp_path / "missing.rtf")) == FILE_OPEN_ERROR


class TestLoadDocument:
    """Tests for format dispatch."""

    def test_epub(self, sample_epub, epub_file):
        assert "Second" in load_document(epub_file(sample_epub), 1)

    def test_txt(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_bytes(b"plain words")
        assert "<pre>plain words</pre>" in load_document(str(path))

    def test_rtf_by_content(self, tmp_path):
        path = tmp_path / "noext"
        path.write_bytes(rb"{\rtf1 From RTF}")
        assert "From RTF" in load_document(str(path))

    def test_missing(self, tmp_path):
        assert load_document(str(tmp_path / "missing.epub")) == BOOK_OPEN_ERROR

    def test_corrupt_epub(self, epub_file):
        assert load_document(epub_file(b"garbage")) == BOOK_OPEN_ERROR


class TestRenderContainer:

    def test_container_reuse(self):
        container = BookContainer(data=b"x & y", source="mem.txt")
        assert "<pre>x &amp; y</pre>" in render_container(container, TXT)


class TestMain:
    """Tests for the command line."""

    def test_no_arguments(self, capsys):
        assert main([]) == 1
        assert "Usage" in capsys.readouterr().out

    def test_bad_chapter_number(self, tmp_path, capsys):
        assert main([str(tmp_path / "a.epub"), "two"]) == 1
        assert "Chapter must be a number" in capsys.readouterr().out

    def test_missing_file(self, tmp_path, capsys):
        assert main([str(tmp_path / "missing.epub")]) == 1
        assert "Error:" in capsys.readouterr().out

    def test_epub_summary_and_output(self, sample_epub, epub_file, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("BOOKLY_COVERS_DIR", str(tmp_path / "covers"))
        path = epub_file(sample_epub)
        assert main([path, "1"]) == 0

        out = capsys.readouterr().out
        assert "Title: Test Book" in out
        assert "Authors: Jane Doe" in out
        assert "Chapters (Spine): 2" in out
        assert os.path.exists(os.path.join(str(tmp_path / "covers"), "Test_Book_cover.jpg"))

        with open(str(tmp_path / "book_chapter1.html"), encoding="utf-8") as f:
            assert "Second" in f.read()

    def test_corrupt_epub(self, epub_file, capsys):
        assert main([epub_file(b"garbage")]) == 1
        assert "Unreadable EPUB container" in capsys.readouterr().out

    def test_text_file(self, tmp_path, capsys):
        path = tmp_path / "notes.txt"
        path.write_bytes(b"hello")
        assert main([str(path)]) == 0
        assert "Format: txt" in capsys.readouterr().out
        assert (tmp_path / "notes_chapter0.html").read_text(encoding="utf-8").count("hello") == 1
