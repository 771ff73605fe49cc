"""
Configuration for Bookly.
Settings come from an optional bookly_config.json next to this module,
overridden by BOOKLY_* environment variables.
"""

import codecs
import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "bookly_config.json"
DEFAULT_ENCODINGS: Tuple[str, ...] = ("utf-8", "latin-1")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class ReaderConfig:
    """Configuration for the ingestion core."""
    encodings: Tuple[str, ...] = DEFAULT_ENCODINGS  # tried in order by the EPUB loader
    text_encoding: str = "utf-8"
    rtf_codepage: str = "cp1252"
    covers_dir: str = "covers"
    log_level: str = "WARNING"


def default_config_path() -> str:
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), CONFIG_FILENAME)


def _known_codec(name: str) -> bool:
    try:
        codecs.lookup(name)
    except LookupError:
        return False
    return True


def _valid_encodings(names: Iterable[str]) -> Tuple[str, ...]:
    result = []
    for name in names:
        name = str(name).strip()
        if not name:
            continue
        if _known_codec(name):
            result.append(name)
        else:
            logger.warning("Ignoring unknown encoding %r", name)
    return tuple(result) or DEFAULT_ENCODINGS


def _codec_or_default(name: Optional[str], default: str) -> str:
    if name and _known_codec(name):
        return name
    if name:
        logger.warning("Unknown encoding %r, using %s", name, default)
    return default


def load_config(path: Optional[str] = None) -> ReaderConfig:
    """Load config from file or environment. Never raises."""
    path = path or default_config_path()
    data = {}

    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Could not read %s, using defaults: %s", path, e)
            data = {}
    if not isinstance(data, dict):
        data = {}

    env_encodings = os.environ.get("BOOKLY_ENCODINGS")
    if env_encodings:
        encodings = env_encodings.split(",")
    else:
        encodings = data.get("encodings") or DEFAULT_ENCODINGS
        if isinstance(encodings, str):
            encodings = encodings.split(",")

    log_level = str(os.environ.get("BOOKLY_LOG_LEVEL") or data.get("log_level") or "WARNING").upper()
    if log_level not in LOG_LEVELS:
        logger.warning("Unknown log level %r, using WARNING", log_level)
        log_level = "WARNING"

    return ReaderConfig(
        encodings=_valid_encodings(encodings),
        text_encoding=_codec_or_default(
            os.environ.get("BOOKLY_TEXT_ENCODING") or data.get("text_encoding"), "utf-8"
        ),
        rtf_codepage=_codec_or_default(
            os.environ.get("BOOKLY_RTF_CODEPAGE") or data.get("rtf_codepage"), "cp1252"
        ),
        covers_dir=os.environ.get("BOOKLY_COVERS_DIR") or data.get("covers_dir") or "covers",
        log_level=log_level,
    )


def save_config(config: ReaderConfig, path: Optional[str] = None) -> None:
    """Save config to file."""
    data = asdict(config)
    data["encodings"] = list(config.encodings)
    with open(path or default_config_path(), "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


# Singleton instance
_config: Optional[ReaderConfig] = None


def get_config() -> ReaderConfig:
    """Get or load the config singleton."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config (useful after environment changes)."""
    global _config
    _config = None
