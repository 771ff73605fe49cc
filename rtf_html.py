"""
Converts RTF to HTML in one left-to-right pass.

Only a practical subset is rendered: paragraphs and line breaks, tabs,
bold/italic, hex-encoded pictures and escaped characters. Metadata groups
(font table, stylesheet, document info, headers, ...) are skipped, and every
other control word is consumed without output.
"""

import base64
import codecs
import enum
import logging
import string
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from chapter_render import CHAPTER_STYLE, escape_text, wrap_document

logger = logging.getLogger(__name__)

DEFAULT_CODEPAGE = "cp1252"

IGNORABLE_DESTINATIONS = frozenset({
    "fonttbl", "colortbl", "stylesheet", "info", "object",
    "header", "headerl", "headerr", "headerf",
    "footer", "footerl", "footerr", "footerf",
    "*",  # {\*\dest ...} groups are optional destinations
})
PICTURE_DESTINATION = "pict"

PARAGRAPH_BREAK = "<br><br>"
LINE_BREAK = "<br>"
TAB = "&emsp;"
NBSP = "&nbsp;"

IMAGE_PLACEHOLDER = '<span class="rtf-image-error">[image unavailable]</span>'

_LETTERS = frozenset(string.ascii_letters)
_DIGITS = frozenset(string.digits)
_HEX_DIGITS = frozenset(string.hexdigits)


class Region(enum.Enum):
    IGNORE = "ignore"
    PICTURE = "picture"


@dataclass
class RtfParseState:
    """Per-call scanner state. Region depths are -1 while inactive."""
    codepage: str = DEFAULT_CODEPAGE
    depth: int = 0
    regions: Dict[Region, int] = field(default_factory=lambda: {Region.IGNORE: -1, Region.PICTURE: -1})
    picture_hex: List[str] = field(default_factory=list)
    picture_malformed: bool = False
    bold: bool = False
    italic: bool = False
    style_stack: List[Tuple[bool, bool]] = field(default_factory=list)
    out: List[str] = field(default_factory=list)

    # --- regions ---

    def active(self, region: Region) -> bool:
        return self.regions[region] >= 0

    def begin(self, region: Region) -> None:
        self.regions[region] = self.depth
        if region is Region.PICTURE:
            self.picture_hex = []
            self.picture_malformed = False

    def end(self, region: Region) -> None:
        self.regions[region] = -1

    @property
    def visible(self) -> bool:
        return not self.active(Region.IGNORE) and not self.active(Region.PICTURE)

    @property
    def capturing_picture(self) -> bool:
        """Inside a picture and not inside an ignorable group nested in it."""
        if not self.active(Region.PICTURE):
            return False
        ignore_depth = self.regions[Region.IGNORE]
        return ignore_depth < 0 or ignore_depth < self.regions[Region.PICTURE]

    # --- output ---

    def emit(self, markup: str) -> None:
        if self.visible:
            self.out.append(markup)

    def set_style(self, bold: bool, italic: bool) -> None:
        """Move the open <b>/<i> tags to the requested state, keeping them nested."""
        if (bold, italic) == (self.bold, self.italic):
            return
        if self.italic and (not italic or bold != self.bold):
            self.out.append("</i>")
            self.italic = False
        if self.bold and not bold:
            self.out.append("</b>")
            self.bold = False
        if bold and not self.bold:
            self.out.append("<b>")
            self.bold = True
        if italic and not self.italic:
            self.out.append("<i>")
            self.italic = True

    def finish(self) -> str:
        self.set_style(False, False)
        return "".join(self.out)


def _scan_control_word(text: str, pos: int) -> Tuple[str, Optional[int], int]:
    """
    Read a control word starting at the backslash at `pos`.
    Returns (word, parameter, end) where `end` is past the optional
    delimiting space.
    """
    n = len(text)
    j = pos + 1
    while j < n and text[j] in _LETTERS:
        j += 1
    word = text[pos + 1:j]

    param = None
    k = j
    if k < n and text[k] == "-":
        k += 1
    if k < n and text[k] in _DIGITS:
        while k < n and text[k] in _DIGITS:
            k += 1
        param = int(text[j:k])
        j = k

    if j < n and text[j] == " ":
        j += 1
    return word, param, j


def _peek_destination(text: str, pos: int) -> Optional[str]:
    """Name of the control word or "*" right after a "{" at pos - 1."""
    if pos + 1 >= len(text) or text[pos] != "\\":
        return None
    if text[pos + 1] == "*":
        return "*"
    if text[pos + 1] in _LETTERS:
        return _scan_control_word(text, pos)[0]
    return None


def _decode_byte(value: int, codepage: str) -> str:
    return bytes([value]).decode(codepage, errors="replace")


def _sniff_image_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"GIF8"):
        return "image/gif"
    return "image/jpeg"


def _emit_picture(state: RtfParseState) -> None:
    payload = "".join(state.picture_hex)
    if state.picture_malformed or len(payload) % 2:
        logger.warning("Malformed RTF picture payload (%d hex digits)", len(payload))
        state.out.append(IMAGE_PLACEHOLDER)
        return
    if not payload:
        return
    try:
        data = bytes.fromhex(payload)
    except ValueError as e:
        logger.warning("Malformed RTF picture payload: %s", e)
        state.out.append(IMAGE_PLACEHOLDER)
        return
    encoded = base64.b64encode(data).decode("ascii")
    state.out.append(f'<img src="data:{_sniff_image_mime(data)};base64,{encoded}" alt="">')


def _open_group(state: RtfParseState, text: str, pos: int) -> int:
    state.depth += 1
    state.style_stack.append((state.bold, state.italic))

    destination = _peek_destination(text, pos + 1)
    if destination in IGNORABLE_DESTINATIONS and not state.active(Region.IGNORE):
        state.begin(Region.IGNORE)
    if destination == PICTURE_DESTINATION and not state.active(Region.PICTURE):
        state.begin(Region.PICTURE)
    return pos + 1


def _close_group(state: RtfParseState) -> None:
    if state.regions[Region.PICTURE] == state.depth:
        state.end(Region.PICTURE)
        _emit_picture(state)
    if state.regions[Region.IGNORE] == state.depth:
        state.end(Region.IGNORE)
    state.depth = max(0, state.depth - 1)

    if state.style_stack:
        bold, italic = state.style_stack.pop()
        if state.visible:
            state.set_style(bold, italic)


def _control_word(state: RtfParseState, word: str, param: Optional[int]) -> None:
    if word == "ansicpg" and param:
        codepage = f"cp{param}"
        try:
            codecs.lookup(codepage)
        except LookupError:
            logger.debug("Unknown RTF code page %s", codepage)
        else:
            state.codepage = codepage
        return

    if not state.visible:
        return

    if word == "par":
        state.out.append(PARAGRAPH_BREAK)
    elif word == "line":
        state.out.append(LINE_BREAK)
    elif word == "tab":
        state.out.append(TAB)
    elif word == "b":
        state.set_style(param is None or param != 0, state.italic)
    elif word == "i":
        state.set_style(state.bold, param is None or param != 0)


def _escape(state: RtfParseState, text: str, pos: int) -> int:
    """Handle the backslash at `pos`; returns the index after the sequence."""
    n = len(text)
    if pos + 1 >= n:
        return n
    nxt = text[pos + 1]

    if nxt == "'":
        digits = text[pos + 2:pos + 4]
        if len(digits) == 2 and all(c in _HEX_DIGITS for c in digits):
            state.emit(escape_text(_decode_byte(int(digits, 16), state.codepage)))
            return pos + 4
        return pos + 2

    if nxt in "{}\\":
        state.emit(escape_text(nxt))
        return pos + 2

    if nxt in _LETTERS:
        word, param, end = _scan_control_word(text, pos)
        _control_word(state, word, param)
        return end

    if nxt in "\r\n":
        _control_word(state, "par", None)
    elif nxt == "~":
        state.emit(NBSP)
    elif nxt == "_":
        state.emit("-")
    return pos + 2


def _raw_char(state: RtfParseState, ch: str) -> None:
    if ch in "\r\n":
        return
    if state.capturing_picture:
        if ch in _HEX_DIGITS:
            state.picture_hex.append(ch)
        elif not ch.isspace():
            state.picture_malformed = True
        return
    if state.visible:
        state.out.append(escape_text(ch))


def convert_rtf(source: Union[str, bytes], codepage: str = DEFAULT_CODEPAGE) -> str:
    """
    Convert an RTF document to an HTML body fragment.
    Bytes are read as Latin-1 so every byte maps to one character.
    """
    text = source.decode("latin-1") if isinstance(source, bytes) else source
    state = RtfParseState(codepage=codepage)

    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if ch == "{":
            i = _open_group(state, text, i)
        elif ch == "}":
            _close_group(state)
            i += 1
        elif ch == "\\":
            i = _escape(state, text, i)
        else:
            _raw_char(state, ch)
            i += 1

    if state.active(Region.PICTURE):
        logger.warning("RTF ended inside a picture group")
    return state.finish()


def rtf_to_html(source: Union[str, bytes], codepage: str = DEFAULT_CODEPAGE) -> str:
    """Convert an RTF document to a full HTML document."""
    return wrap_document(convert_rtf(source, codepage), style=CHAPTER_STYLE)
