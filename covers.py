"""
Cover thumbnail extraction: writes the EPUB's declared cover image to disk
under a name derived from the book title.
"""

import logging
import os
import re
from typing import Optional

from epub_model import EpubModel

logger = logging.getLogger(__name__)

COVER_SUFFIX = "_cover.jpg"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_]")


def cover_filename(title: str) -> str:
    """'My Book (1)' -> 'My_Book__1__cover.jpg'"""
    return _UNSAFE_CHARS.sub("_", title or "") + COVER_SUFFIX


def extract_cover(model: EpubModel, title: str, dest_dir: str) -> Optional[str]:
    """
    Write the declared cover of `model` into `dest_dir`.
    Returns the written path, or None when the book declares no cover.
    """
    data = model.cover_image()
    if data is None:
        logger.info("No cover declared for %r", title)
        return None

    os.makedirs(dest_dir, exist_ok=True)
    local_path = os.path.join(dest_dir, cover_filename(title))
    with open(local_path, 'wb') as f:
        f.write(data)

    logger.info("Extracted cover image: %s", local_path)
    return local_path
