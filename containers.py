"""
Resolves a book reference (a filesystem path, a file:// URI or a host content
URI) to the bytes behind it.
"""

import codecs
import io
import logging
import os
from contextlib import closing
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional, Union
from urllib.parse import urlparse
from urllib.request import url2pathname

from book_errors import ContainerUnavailable, EncodingError

logger = logging.getLogger(__name__)

# A host-provided resolver for non-file schemes (content://, app://, ...).
# It returns the bytes, a binary stream that we close after reading, or None.
ContentResolver = Callable[[str], Union[bytes, BinaryIO, None]]

Reference = Union[str, "os.PathLike[str]"]

_BOMS = (
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


@dataclass(frozen=True)
class BookContainer:
    """An opened byte source and the character encoding detected for it."""
    data: bytes
    source: str
    encoding: str = "utf-8"

    def stream(self) -> io.BytesIO:
        """A fresh seekable stream over the container bytes."""
        return io.BytesIO(self.data)

    def text(self) -> str:
        try:
            return self.data.decode(self.encoding)
        except UnicodeDecodeError as e:
            raise EncodingError(self.source, self.encoding, str(e)) from e


def detect_encoding(data: bytes, default: str = "utf-8") -> str:
    """Pick an encoding from a byte-order mark, else return `default`."""
    for bom, encoding in _BOMS:
        if data.startswith(bom):
            return encoding
    return default


def _uri_scheme(reference: str) -> str:
    scheme = urlparse(reference).scheme
    # "C:\books\a.epub" parses with scheme "c"
    if len(scheme) <= 1:
        return ""
    return scheme.lower()


def _read_path(path: str, reference: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise ContainerUnavailable(reference, e.strerror or str(e)) from e


def _read_resolved(reference: str, resolver: Optional[ContentResolver]) -> bytes:
    if resolver is None:
        raise ContainerUnavailable(reference, "no resolver for this scheme")
    try:
        handle = resolver(reference)
        if handle is None:
            raise ContainerUnavailable(reference, "resolver returned nothing")
        if isinstance(handle, (bytes, bytearray, memoryview)):
            return bytes(handle)
        with closing(handle):
            return handle.read()
    except (OSError, ValueError, LookupError) as e:
        raise ContainerUnavailable(reference, str(e)) from e


def read_reference(reference: Reference, resolver: Optional[ContentResolver] = None) -> bytes:
    """Return the raw bytes behind `reference` or raise ContainerUnavailable."""
    reference = os.fspath(reference)
    scheme = _uri_scheme(reference)
    if not scheme:
        return _read_path(reference, reference)
    if scheme == "file":
        path = url2pathname(urlparse(reference).path)
        if not path:
            raise ContainerUnavailable(reference, "empty file path")
        return _read_path(path, reference)
    return _read_resolved(reference, resolver)


def open_container(
    reference: Reference,
    resolver: Optional[ContentResolver] = None,
    default_encoding: str = "utf-8",
) -> BookContainer:
    """Open `reference` into a BookContainer.

    Plain paths and file:// URIs are read from the filesystem; every other
    scheme is handed to `resolver`. No handle stays open after the call.
    """
    source = os.fspath(reference)
    data = read_reference(source, resolver)
    encoding = detect_encoding(data, default_encoding)
    logger.debug("Opened %s (%d bytes, %s)", source, len(data), encoding)
    return BookContainer(data=data, source=source, encoding=encoding)
