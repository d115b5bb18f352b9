"""Directory resolution and favorite-name rules for codexgate.

Key functions:
    resolve_directory: Turn user path text into an existing absolute
        directory, raising PathResolutionError otherwise.
    normalize_favorite_name / validate_favorite_name: Favorite key rules.
"""

import os
import re
from pathlib import Path

from .exceptions import FavoriteNameInvalid, PathResolutionError

FAVORITE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]{0,31}$")

# Windows-style %VAR% references; $VAR and ${VAR} go through os.path.expandvars
_PERCENT_VAR = re.compile(r"%([^%]+)%")


def unquote_wrapped(text: str) -> str:
    """Strip one pair of matching surrounding quotes."""
    value = (text or "").strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1].strip()
    return value


def expand_path_variables(text: str) -> str:
    """Expand a leading ~ and environment variable references."""
    value = os.path.expanduser(text)
    value = _PERCENT_VAR.sub(
        lambda m: os.environ.get(m.group(1), m.group(0)), value,
    )
    return os.path.expandvars(value)


def validate_directory(path: Path) -> Path:
    """Require that path exists and is a directory."""
    if not path.exists():
        raise PathResolutionError(
            f"No such directory: {path}", path=str(path),
        )
    if not path.is_dir():
        raise PathResolutionError(
            f"Not a directory: {path}", path=str(path),
        )
    return path


def resolve_directory(raw: str, base: Path) -> Path:
    """Resolve user path text against base and validate it.

    Args:
        raw: Path as typed by the user, possibly quoted, home-relative
            or containing environment variables.
        base: Directory that relative paths are resolved against.

    Returns:
        Absolute path of an existing directory.

    Raises:
        PathResolutionError: If the text is empty or the path is not
            an existing directory.
    """
    text = unquote_wrapped(raw)
    if not text:
        raise PathResolutionError("Missing path. Usage: /cd <path>")
    expanded = Path(expand_path_variables(text))
    if not expanded.is_absolute():
        expanded = Path(base) / expanded
    resolved = Path(os.path.abspath(expanded))
    return validate_directory(resolved)


def normalize_favorite_name(name: str) -> str:
    return (name or "").strip().lower()


def is_valid_favorite_name(name: str) -> bool:
    return bool(FAVORITE_NAME_PATTERN.match(name))


def validate_favorite_name(name: str) -> str:
    """Normalize a favorite name and check it against the pattern.

    Raises:
        FavoriteNameInvalid: If the normalized name does not match.
    """
    normalized = normalize_favorite_name(name)
    if not is_valid_favorite_name(normalized):
        raise FavoriteNameInvalid(name=normalized)
    return normalized
