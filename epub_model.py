"""
Parses an EPUB container into an immutable model: the chapters in spine
order, a resource table for images and other assets, the declared cover
and the Dublin Core metadata.
"""

import contextlib
import io
import logging
import os
import posixpath
import re
import tempfile
import zipfile
import zlib
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple
from urllib.parse import unquote

import ebooklib
from bs4 import BeautifulSoup
from ebooklib import epub
from lxml import etree

from book_errors import CorruptContainer, EncodingError, IndexOutOfRange
from reader_config import DEFAULT_ENCODINGS

logger = logging.getLogger(__name__)

CONTAINER_PATH = "META-INF/container.xml"
PACKAGE_SUFFIXES = (".opf", ".ncx")
READ_OPTIONS = {"ignore_ncx": True}
OPF_NS = "http://www.idpf.org/2007/opf"

# How zipfile, lxml and ebooklib report a damaged or mis-encoded archive
ARCHIVE_ERRORS = (
    zipfile.BadZipFile,
    zlib.error,
    EOFError,
    KeyError,
    UnicodeError,
    ValueError,
    etree.XMLSyntaxError,
    epub.EpubException,
)

_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>", re.IGNORECASE)
_UTF8_DECLARATION = '<?xml version="1.0" encoding="utf-8"?>\n'


# --- Data structures ---

@dataclass
class BookMetadata:
    """Metadata"""
    title: str
    language: str
    authors: List[str] = field(default_factory=list)
    description: Optional[str] = None
    publisher: Optional[str] = None
    date: Optional[str] = None
    identifiers: List[str] = field(default_factory=list)
    subjects: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Chapter:
    """One spine entry: its path inside the package and its raw bytes."""
    href: str
    content: Optional[bytes]


# --- Resource lookup ---

# Each strategy maps a requested path onto a table key, or returns None to
# let the next strategy try.
LookupStrategy = Callable[["ResourceTable", str], Optional[str]]


def _exact(table: "ResourceTable", path: str) -> Optional[str]:
    return path if path in table else None


def _percent_decoded(table: "ResourceTable", path: str) -> Optional[str]:
    decoded = unquote(path)
    if decoded != path and decoded in table:
        return decoded
    return None


def _case_insensitive(table: "ResourceTable", path: str) -> Optional[str]:
    return table.folded_key(path) or table.folded_key(unquote(path))


BASIC_STRATEGIES: Tuple[LookupStrategy, ...] = (_exact, _percent_decoded, _case_insensitive)


def _archive_root(table: "ResourceTable", path: str) -> Optional[str]:
    """Accept archive paths that still carry the package directory prefix."""
    prefix = table.root + "/" if table.root else ""
    if not prefix or not path.startswith(prefix):
        return None
    relative = path[len(prefix):]
    for strategy in BASIC_STRATEGIES:
        key = strategy(table, relative)
        if key is not None:
            return key
    return None


LOOKUP_STRATEGIES: Tuple[LookupStrategy, ...] = BASIC_STRATEGIES + (_archive_root,)


class ResourceTable(Mapping[str, bytes]):
    """
    Read-only map from package-relative path to resource bytes.

    `lookup` tries LOOKUP_STRATEGIES in order: exact key, percent-decoded
    key, case-insensitive match (raw then decoded), and finally the same
    with the package directory stripped off an archive-root path.
    """

    def __init__(self, entries: Mapping[str, bytes], root: str = "",
                 strategies: Sequence[LookupStrategy] = LOOKUP_STRATEGIES):
        self._entries = MappingProxyType(dict(entries))
        self._folded: Dict[str, str] = {}
        for key in self._entries:
            self._folded.setdefault(key.casefold(), key)
        self.root = root.strip("/")
        self.strategies = tuple(strategies)

    def __getitem__(self, key: str) -> bytes:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def folded_key(self, path: str) -> Optional[str]:
        return self._folded.get(path.casefold())

    def resolve_key(self, path: str) -> Optional[str]:
        for strategy in self.strategies:
            key = strategy(self, path)
            if key is not None:
                return key
        return None

    def lookup(self, path: str) -> Optional[bytes]:
        key = self.resolve_key(path)
        return None if key is None else self._entries[key]


# --- Utilities ---

def is_content_document(item) -> bool:
    """
    Check if an item is a content document (HTML/XHTML).
    Extends ebooklib's ITEM_DOCUMENT detection to also check media type and file extension.
    """
    if item.get_type() == ebooklib.ITEM_DOCUMENT:
        return True

    media_type = getattr(item, 'media_type', '') or ''
    if media_type in ('text/html', 'application/xhtml+xml'):
        return True

    name = (item.get_name() or '').lower()
    return name.endswith(('.html', '.xhtml', '.htm'))


def extract_metadata(book_obj) -> BookMetadata:
    """
    Extracts metadata handling both single and list values.
    """
    def get_list(key):
        data = book_obj.get_metadata('DC', key)
        return [x[0] for x in data if x[0]] if data else []

    def get_one(key):
        data = book_obj.get_metadata('DC', key)
        return data[0][0] if data else None

    return BookMetadata(
        title=get_one('title') or "Untitled",
        language=get_one('language') or "en",
        authors=get_list('creator'),
        description=get_one('description'),
        publisher=get_one('publisher'),
        date=get_one('date'),
        identifiers=get_list('identifier'),
        subjects=get_list('subject')
    )


def find_cover_name(book_obj) -> Optional[str]:
    """
    Name of the cover image declared in the manifest, or None.
    EPUB 3 marks it with the cover-image property, EPUB 2 with
    <meta name="cover" content="item-id"/>.
    """
    for item in book_obj.get_items_of_type(ebooklib.ITEM_COVER):
        return item.get_name()

    # Newer ebooklib files <meta name="cover"> under ('OPF', 'meta'),
    # older releases under ('OPF', 'cover')
    candidates = [
        attrs for _value, attrs in book_obj.get_metadata('OPF', 'meta')
        if (attrs or {}).get('name') == 'cover'
    ]
    candidates += [attrs for _value, attrs in book_obj.get_metadata('OPF', 'cover')]

    for attrs in candidates:
        cover_id = (attrs or {}).get('content')
        item = book_obj.get_item_with_id(cover_id) if cover_id else None
        if item is not None and item.get_type() in (ebooklib.ITEM_IMAGE, ebooklib.ITEM_COVER):
            return item.get_name()
    return None


def _transcode_xml(raw: bytes, encoding: str) -> bytes:
    text = raw.decode(encoding).lstrip("\ufeff")
    text = _XML_DECLARATION.sub("", text, count=1).lstrip()
    return (_UTF8_DECLARATION + text).encode("utf-8")


def _package_path(container_xml: bytes) -> str:
    soup = BeautifulSoup(container_xml, "xml")
    rootfile = soup.find("rootfile")
    return (rootfile.get("full-path") or "") if rootfile else ""


def _drop_missing_items(opf: bytes, opf_dir: str, names: Set[str]) -> Tuple[bytes, Dict[str, str]]:
    """
    Remove manifest items whose file is not in the archive.
    Returns the package document and a map of dropped item id -> href.
    """
    package = etree.fromstring(opf, etree.XMLParser(resolve_entities=False))
    manifest = package.find(f"{{{OPF_NS}}}manifest")
    if manifest is None:
        return opf, {}

    missing = {}
    for item in manifest.findall(f"{{{OPF_NS}}}item"):
        href = unquote(item.get("href") or "")
        if posixpath.normpath(posixpath.join(opf_dir, href)) in names:
            continue
        missing[item.get("id") or href] = href
        manifest.remove(item)
    if not missing:
        return opf, {}

    spine = package.find(f"{{{OPF_NS}}}spine")
    if spine is not None and spine.get("toc") in missing:
        del spine.attrib["toc"]
    for item_id, href in missing.items():
        logger.warning("Manifest item %s (%s) is missing from the archive", item_id, href)
    return etree.tostring(package, xml_declaration=True, encoding="utf-8"), missing


@dataclass(frozen=True)
class NormalizedArchive:
    """Archive bytes ready for ebooklib plus what was learned rewriting it."""
    data: bytes
    root: str
    missing: Dict[str, str] = field(default_factory=dict)


def normalize_archive(data: bytes, encoding: str) -> NormalizedArchive:
    """
    Rewrite the package documents (container.xml, OPF, NCX) of an EPUB
    archive from `encoding` to UTF-8, and drop manifest items whose file
    is absent. Content documents are copied as-is.
    """
    out = io.BytesIO()
    package_path = ""
    missing: Dict[str, str] = {}
    with zipfile.ZipFile(io.BytesIO(data)) as src, zipfile.ZipFile(out, "w") as dst:
        names = set(src.namelist())
        for info in src.infolist():
            if info.is_dir():
                continue
            content = src.read(info)
            lowered = info.filename.lower()
            if info.filename == CONTAINER_PATH or lowered.endswith(PACKAGE_SUFFIXES):
                content = _transcode_xml(content, encoding)
                if info.filename == CONTAINER_PATH:
                    package_path = _package_path(content)
                elif lowered.endswith(".opf"):
                    content, dropped = _drop_missing_items(content, posixpath.dirname(info.filename), names)
                    missing.update(dropped)
            copy = zipfile.ZipInfo(info.filename, date_time=info.date_time)
            copy.compress_type = info.compress_type
            dst.writestr(copy, content)
    return NormalizedArchive(out.getvalue(), posixpath.dirname(package_path), missing)


def read_archive(archive: bytes):
    """Load archive bytes with ebooklib, which reads from a file path."""
    fd, path = tempfile.mkstemp(suffix=".epub")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(archive)
        return epub.read_epub(path, READ_OPTIONS)
    finally:
        with contextlib.suppress(OSError):
            os.remove(path)


# --- Model ---

class EpubModel:
    """
    An opened EPUB. Chapters and resources are fixed at construction;
    nothing here holds the source archive open.
    """

    def __init__(self, chapters: Iterable[Chapter], resources: ResourceTable,
                 metadata: Optional[BookMetadata] = None,
                 cover_name: Optional[str] = None, encoding: str = "utf-8"):
        self._chapters: Tuple[Chapter, ...] = tuple(chapters)
        self.resources = resources
        self.metadata = metadata or BookMetadata(title="Untitled", language="en")
        self.cover_name = cover_name
        self.encoding = encoding

    @classmethod
    def from_book(cls, book_obj, encoding: str = "utf-8", root: str = "",
                  missing: Optional[Mapping[str, str]] = None) -> "EpubModel":
        """
        Build a model from an ebooklib book. Every spine entry becomes a
        chapter; entries whose document is missing or not a content document
        keep their position with no content.
        """
        missing = missing or {}
        entries = {}
        for item in book_obj.get_items():
            content = getattr(item, "content", None)
            if content is None:
                continue
            if isinstance(content, str):
                content = content.encode("utf-8")
            entries[item.get_name()] = content

        chapters = []
        for item_id, _linear in book_obj.spine:
            item = book_obj.get_item_with_id(item_id)
            if item is None:
                logger.warning("Spine entry %r has no document", item_id)
                chapters.append(Chapter(href=missing.get(item_id, item_id), content=None))
                continue
            if not is_content_document(item):
                logger.warning("Spine entry %s is not a content document", item.get_name())
                chapters.append(Chapter(href=item.get_name(), content=None))
                continue
            chapters.append(Chapter(href=item.get_name(), content=entries.get(item.get_name())))

        return cls(
            chapters=chapters,
            resources=ResourceTable(entries, root=root),
            metadata=extract_metadata(book_obj),
            cover_name=find_cover_name(book_obj),
            encoding=encoding,
        )

    @property
    def chapter_hrefs(self) -> List[str]:
        return [chapter.href for chapter in self._chapters]

    def chapter_count(self) -> int:
        return len(self._chapters)

    def _chapter(self, index: int) -> Chapter:
        if not 0 <= index < len(self._chapters):
            raise IndexOutOfRange(index, len(self._chapters))
        return self._chapters[index]

    def chapter_href(self, index: int) -> str:
        return self._chapter(index).href

    def chapter_markup(self, index: int) -> Optional[str]:
        """
        Raw markup of one chapter decoded as UTF-8, or None when the
        chapter has no content. Raises EncodingError for undecodable bytes;
        the rest of the book stays usable.
        """
        chapter = self._chapter(index)
        if chapter.content is None:
            return None
        try:
            return chapter.content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise EncodingError(chapter.href, "utf-8", str(e)) from e

    def resource(self, path: str) -> Optional[bytes]:
        return self.resources.lookup(path)

    def cover_image(self) -> Optional[bytes]:
        if not self.cover_name:
            return None
        return self.resources.get(self.cover_name)


def open_epub(data: bytes, encodings: Optional[Sequence[str]] = None) -> EpubModel:
    """
    Parse EPUB bytes, trying each encoding in turn for the package
    documents. Raises CorruptContainer when every attempt fails.
    """
    encodings = tuple(encodings or DEFAULT_ENCODINGS)
    last_error = ""
    for encoding in encodings:
        try:
            archive = normalize_archive(data, encoding)
            book = read_archive(archive.data)
        except ARCHIVE_ERRORS as e:
            last_error = f"{type(e).__name__}: {e}"
            logger.warning("Could not parse EPUB as %s: %s", encoding, last_error)
            continue
        model = EpubModel.from_book(book, encoding=encoding, root=archive.root, missing=archive.missing)
        logger.info("Loaded EPUB as %s: %d chapters, %d resources",
                    encoding, model.chapter_count(), len(model.resources))
        return model
    raise CorruptContainer(encodings, last_error)
