"""
Entry points of the Bookly ingestion core: open a book reference and get
renderable HTML back for EPUB, RTF or plain-text files.
"""

import logging
import os
import sys
from typing import List, Optional
from urllib.parse import urlparse

from book_errors import ContainerUnavailable, EncodingError, ParseFailure
from chapter_render import (
    BOOK_OPEN_ERROR,
    CHAPTER_ENCODING_ERROR,
    END_OF_BOOK,
    FILE_OPEN_ERROR,
    render_chapter,
    render_plain_text,
)
from containers import BookContainer, ContentResolver, Reference, open_container
from covers import extract_cover
from epub_model import EpubModel, open_epub
from reader_config import ReaderConfig, get_config
from rtf_html import rtf_to_html

logger = logging.getLogger(__name__)

EPUB, RTF, TXT = "epub", "rtf", "txt"
_EXTENSIONS = {".epub": EPUB, ".rtf": RTF, ".txt": TXT}


# --- Format detection ---

def detect_format(reference: Reference, data: Optional[bytes] = None) -> str:
    """
    Pick the pipeline for a book: the file extension when it is known,
    else the leading bytes, else EPUB.
    """
    reference = os.fspath(reference)
    path = urlparse(reference).path if "://" in reference else reference
    ext = os.path.splitext(path)[1].lower()
    if ext in _EXTENSIONS:
        return _EXTENSIONS[ext]

    if data:
        if data.startswith(b"PK\x03\x04"):
            return EPUB
        if data.lstrip()[:5] == b"{\\rtf":
            return RTF
    return EPUB


def _open(reference: Reference, resolver: Optional[ContentResolver],
          config: ReaderConfig) -> BookContainer:
    return open_container(reference, resolver, default_encoding=config.text_encoding)


# --- EPUB ---

def open_book(reference: Reference, resolver: Optional[ContentResolver] = None,
              config: Optional[ReaderConfig] = None) -> EpubModel:
    """Open and parse an EPUB. Raises ContainerUnavailable or ParseFailure."""
    config = config or get_config()
    container = _open(reference, resolver, config)
    return open_epub(container.data, config.encodings)


def get_chapters(reference: Reference, resolver: Optional[ContentResolver] = None,
                 config: Optional[ReaderConfig] = None) -> List[str]:
    """Chapter hrefs in reading order."""
    return open_book(reference, resolver, config).chapter_hrefs


def render_book_chapter(model: EpubModel, index: int) -> str:
    """Render chapter `index`; end-of-book and bad chapters become fragments."""
    if index < 0 or index >= model.chapter_count():
        return END_OF_BOOK

    href = model.chapter_href(index)
    try:
        markup = model.chapter_markup(index)
    except EncodingError as e:
        logger.warning("Chapter %d unreadable: %s", index, e)
        return CHAPTER_ENCODING_ERROR
    return render_chapter(markup, href, model.resource)


def load_chapter(reference: Reference, index: int,
                 resolver: Optional[ContentResolver] = None,
                 config: Optional[ReaderConfig] = None) -> str:
    """Rendered HTML for one chapter. Never raises for a bad book."""
    try:
        model = open_book(reference, resolver, config)
    except (ContainerUnavailable, ParseFailure) as e:
        logger.warning("Could not open book %s: %s", os.fspath(reference), e)
        return BOOK_OPEN_ERROR
    return render_book_chapter(model, index)


def extract_cover_image(reference: Reference, title: Optional[str] = None,
                        dest_dir: Optional[str] = None,
                        resolver: Optional[ContentResolver] = None,
                        config: Optional[ReaderConfig] = None) -> Optional[str]:
    """
    Save the declared cover as <title>_cover.jpg in `dest_dir` (default:
    the configured covers directory). Returns the path, or None when the
    book has no cover. Open failures propagate.
    """
    config = config or get_config()
    model = open_book(reference, resolver, config)
    return extract_cover(model, title or model.metadata.title, dest_dir or config.covers_dir)


# --- Plain text and RTF ---

def parse_txt(reference: Reference, resolver: Optional[ContentResolver] = None,
              config: Optional[ReaderConfig] = None) -> str:
    config = config or get_config()
    try:
        container = _open(reference, resolver, config)
    except ContainerUnavailable as e:
        logger.warning("%s", e)
        return FILE_OPEN_ERROR
    return render_plain_text(container.data, container.encoding)


def parse_rtf(reference: Reference, resolver: Optional[ContentResolver] = None,
              config: Optional[ReaderConfig] = None) -> str:
    config = config or get_config()
    try:
        container = _open(reference, resolver, config)
    except ContainerUnavailable as e:
        logger.warning("%s", e)
        return FILE_OPEN_ERROR
    return rtf_to_html(container.data, config.rtf_codepage)


def render_container(container: BookContainer, fmt: str, index: int = 0,
                     config: Optional[ReaderConfig] = None) -> str:
    """Render an already-opened container with the pipeline for `fmt`."""
    config = config or get_config()
    if fmt == TXT:
        return render_plain_text(container.data, container.encoding)
    if fmt == RTF:
        return rtf_to_html(container.data, config.rtf_codepage)

    try:
        model = open_epub(container.data, config.encodings)
    except ParseFailure as e:
        logger.warning("Could not open book %s: %s", container.source, e)
        return BOOK_OPEN_ERROR
    return render_book_chapter(model, index)


def load_document(reference: Reference, chapter_index: int = 0,
                  resolver: Optional[ContentResolver] = None,
                  config: Optional[ReaderConfig] = None) -> str:
    """
    Open any supported book and render it. For EPUB this is one chapter;
    RTF and text files render whole.
    """
    config = config or get_config()
    try:
        container = _open(reference, resolver, config)
    except ContainerUnavailable as e:
        logger.warning("%s", e)
        return BOOK_OPEN_ERROR
    return render_container(container, detect_format(reference, container.data), chapter_index, config)


# --- CLI ---

def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    config = get_config()
    logging.basicConfig(level=config.log_level, format="%(levelname)s %(name)s: %(message)s")

    if not args:
        print("Usage: bookly <file.epub|file.rtf|file.txt> [chapter]")
        return 1

    source = args[0]
    try:
        index = int(args[1]) if len(args) > 1 else 0
    except ValueError:
        print(f"Chapter must be a number, got {args[1]!r}")
        return 1

    try:
        container = _open(source, None, config)
    except ContainerUnavailable as e:
        print(f"Error: {e}")
        return 1

    fmt = detect_format(source, container.data)
    out_path = os.path.splitext(source)[0] + f"_chapter{index}.html"

    print("\n--- Summary ---")
    print(f"Format: {fmt}")
    if fmt == EPUB:
        try:
            model = open_epub(container.data, config.encodings)
        except ParseFailure as e:
            print(f"Error: {e}")
            return 1
        html_out = render_book_chapter(model, index)
        cover = extract_cover(model, model.metadata.title, config.covers_dir)
        print(f"Title: {model.metadata.title}")
        print(f"Authors: {', '.join(model.metadata.authors)}")
        print(f"Chapters (Spine): {model.chapter_count()}")
        print(f"Cover: {cover or 'none'}")
    else:
        html_out = render_container(container, fmt, index, config)

    with open(out_path, 'w', encoding='utf-8') as f:
        f.write(html_out)
    print(f"Wrote {out_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
