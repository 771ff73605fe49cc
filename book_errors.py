"""
Error taxonomy for Bookly.

Container and whole-book failures are raised to the caller. Chapter, image
and text failures are caught at the rendering boundary and turned into a
visible fragment instead.
"""

from typing import Optional, Sequence


class BooklyError(Exception):
    """Base class for every failure raised by the ingestion core."""


class ContainerUnavailable(BooklyError):
    """The byte source behind a reference could not be opened."""

    def __init__(self, reference: str, reason: str = ""):
        self.reference = reference
        self.reason = reason
        message = f"Cannot open {reference}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ParseFailure(BooklyError):
    """A container or one of its parts could not be parsed."""


class CorruptContainer(ParseFailure):
    """The container is unreadable under every configured encoding."""

    def __init__(self, encodings: Sequence[str], reason: str = ""):
        self.encodings = tuple(encodings)
        self.reason = reason
        message = f"Unreadable EPUB container (tried {', '.join(self.encodings) or 'no encodings'})"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class EncodingError(ParseFailure, UnicodeError):
    """The bytes of one chapter or text file cannot be decoded."""

    def __init__(self, source: str, encoding: str, reason: Optional[str] = None):
        self.source = source
        self.encoding = encoding
        self.reason = reason
        message = f"Cannot decode {source} as {encoding}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class IndexOutOfRange(BooklyError, IndexError):
    """A chapter index outside [0, chapter_count)."""

    def __init__(self, index: int, count: int):
        self.index = index
        self.count = count
        super().__init__(f"Chapter index {index} out of range (book has {count} chapters)")
