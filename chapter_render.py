"""
Turns chapter markup and plain text into self-contained HTML documents sized
for a phone-width viewport.
"""

import html
import logging
from typing import Optional, Union

from bs4 import BeautifulSoup, Comment, Declaration, Doctype, ParserRejectedMarkup, ProcessingInstruction

from image_inliner import ResourceLookup, inline_soup_images

logger = logging.getLogger(__name__)

# --- Fixed fragments ---

BOOK_OPEN_ERROR = "<h3>Error: Could not open book.</h3>"
END_OF_BOOK = "<h3>End of Book</h3>"
CHAPTER_NOT_FOUND = "<h3>Error: Chapter not found.</h3>"
CHAPTER_ENCODING_ERROR = "<h3>Error reading chapter encoding.</h3>"
FILE_OPEN_ERROR = "<h3>Error: Cannot open file</h3>"
TEXT_READ_ERROR = "<h3>Error reading text file.</h3>"

VIEWPORT_META = (
    '<meta name="viewport" content="width=device-width, initial-scale=1.0, '
    'maximum-scale=1.0, user-scalable=no">'
)

CHAPTER_STYLE = """\
html, body {
    width: 100%; overflow-x: hidden; margin: 0; padding: 16px;
    word-wrap: break-word; line-height: 1.6;
}
* { max-width: 100% !important; box-sizing: border-box !important; }
img, svg, video { height: auto !important; display: block; margin: 10px auto; }
hr { width: 100% !important; height: 1px; border: none; background-color: #ccc; }
table { display: block; width: 100% !important; overflow-x: auto; }"""

TEXT_STYLE = """\
html, body { width: 100%; margin: 0; padding: 16px; word-wrap: break-word; font-family: sans-serif; }
* { max-width: 100% !important; box-sizing: border-box !important; }
pre { white-space: pre-wrap; font-family: inherit; margin: 0; }"""

BOTTOM_SPACER = '<div style="height: 50px;"></div>'

UNSAFE_TAGS = ['script', 'iframe', 'form', 'button', 'input', 'embed', 'object']


def wrap_document(body: str, style: str = CHAPTER_STYLE, spacer: bool = True) -> str:
    """Wrap a body fragment in the viewport/normalizing preamble."""
    parts = [
        "<html>",
        "<head>",
        VIEWPORT_META,
        f"<style>\n{style}\n</style>",
        "</head>",
        "<body>",
        body,
    ]
    if spacer:
        parts.append(BOTTOM_SPACER)
    parts += ["</body>", "</html>"]
    return "\n".join(parts)


def clean_html_content(soup: BeautifulSoup) -> BeautifulSoup:

    # Remove active/interactive tags
    for tag in soup(UNSAFE_TAGS):
        tag.decompose()

    # Remove HTML comments
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    return soup


def body_inner_html(soup: BeautifulSoup) -> str:
    body = soup.find('body')
    if body:
        return "".join(str(x) for x in body.contents)

    # Fragment without <body>: drop prolog nodes and keep the rest
    for node in soup.find_all(string=lambda text: isinstance(text, (Declaration, Doctype, ProcessingInstruction))):
        node.extract()
    return str(soup)


def render_chapter(raw_markup: Optional[str], href: str,
                   lookup: Optional[ResourceLookup] = None) -> str:
    """
    Render one chapter to a full HTML document with images inlined.

    Never raises for bad content: a missing chapter yields CHAPTER_NOT_FOUND.
    """
    if raw_markup is None:
        return CHAPTER_NOT_FOUND

    try:
        soup = BeautifulSoup(raw_markup, 'html.parser')
    except ParserRejectedMarkup as e:
        logger.warning("Could not parse chapter %s: %s", href, e)
        return CHAPTER_NOT_FOUND

    if lookup is not None:
        replaced = inline_soup_images(soup, href, lookup)
        logger.debug("Inlined %d images in %s", replaced, href)
    clean_html_content(soup)
    return wrap_document(body_inner_html(soup))


def escape_text(text: str) -> str:
    """Escape &, < and > only."""
    return html.escape(text, quote=False)


def render_plain_text(source: Union[str, bytes], encoding: str = "utf-8") -> str:
    """
    Wrap plain text in a <pre> block. Undecodable bytes yield TEXT_READ_ERROR.
    """
    if isinstance(source, bytes):
        try:
            source = source.decode(encoding)
        except UnicodeDecodeError as e:
            logger.warning("Could not decode text as %s: %s", encoding, e)
            return TEXT_READ_ERROR
    return wrap_document(f"<pre>{escape_text(source)}</pre>", style=TEXT_STYLE, spacer=False)
