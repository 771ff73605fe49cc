"""
Rewrites image references in chapter markup into base64 data URIs, resolving
each reference against the chapter's own path inside the EPUB.
"""

import base64
import binascii
import logging
from typing import Callable, Optional
from urllib.parse import unquote, urlparse

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

ResourceLookup = Callable[[str], Optional[bytes]]

# Only ".." climbs a level; "..." is kept as an ordinary directory name.
PARENT_SEGMENTS = frozenset({".."})
NOOP_SEGMENTS = frozenset({".", ""})

_SVG_HREF_ATTRS = ("xlink:href", "href")


def resolve_relative_path(base_href: str, relative_path: str) -> str:
    """
    Resolve `relative_path` against the folder of `base_href`.
    A leading "/" resolves from the archive root. Climbing above the root is
    ignored rather than treated as an error.
    """
    if relative_path.startswith("/"):
        joined = relative_path
    else:
        folder = base_href.rpartition("/")[0]
        joined = f"{folder}/{relative_path}" if folder else relative_path

    stack = []
    for part in joined.split("/"):
        if part in PARENT_SEGMENTS:
            if stack:
                stack.pop()
        elif part in NOOP_SEGMENTS:
            continue
        else:
            stack.append(part)
    return "/".join(stack)


def guess_image_mime(path: str) -> str:
    lowered = path.lower()
    if lowered.endswith(".png"):
        return "image/png"
    if lowered.endswith(".gif"):
        return "image/gif"
    if lowered.endswith(".svg"):
        return "image/svg+xml"
    return "image/jpeg"


def is_external_reference(reference: str) -> bool:
    """True for absolute URLs (http:, data:, ...) and protocol-relative links."""
    if reference.startswith("//"):
        return True
    return len(urlparse(reference).scheme) > 1


def to_data_uri(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def inline_reference(reference: str, base_href: str, lookup: ResourceLookup) -> Optional[str]:
    """
    Return a data URI for one reference, or None to leave it untouched.
    """
    reference = (reference or "").strip()
    if not reference or is_external_reference(reference):
        return None

    path = unquote(reference.split("#", 1)[0].split("?", 1)[0])
    if not path:
        return None

    resolved = resolve_relative_path(base_href, path)
    data = lookup(resolved)
    if data is None:
        logger.debug("No resource for %r (resolved to %r from %s)", reference, resolved, base_href)
        return None

    try:
        return to_data_uri(data, guess_image_mime(resolved))
    except (TypeError, ValueError, binascii.Error, MemoryError) as e:
        logger.warning("Could not embed %s: %s", resolved, e)
        return None


def inline_soup_images(soup: BeautifulSoup, base_href: str, lookup: ResourceLookup) -> int:
    """
    Inline every src reference and SVG <image> reference in `soup`.
    Returns the number of references replaced.
    """
    replaced = 0

    for tag in soup.find_all(src=True):
        data_uri = inline_reference(tag.get("src", ""), base_href, lookup)
        if data_uri:
            tag["src"] = data_uri
            replaced += 1

    for tag in soup.find_all("image"):
        for attr in _SVG_HREF_ATTRS:
            if not tag.get(attr):
                continue
            data_uri = inline_reference(tag[attr], base_href, lookup)
            if data_uri:
                tag[attr] = data_uri
                replaced += 1

    return replaced


def inline_images(markup: str, base_href: str, lookup: ResourceLookup) -> str:
    """Markup-in, markup-out wrapper around inline_soup_images."""
    soup = BeautifulSoup(markup, "html.parser")
    inline_soup_images(soup, base_href, lookup)
    return str(soup)
