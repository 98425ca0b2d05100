import ntpath
import re
from typing import List, Optional
from urllib.parse import unquote

from app.services.errors import InvalidPath

MAX_PATH_LENGTH = 1024

# A safe extension is a dot followed by a short alphanumeric suffix
_EXTENSION_PATTERN = re.compile(r'^\.[a-zA-Z0-9]{1,16}$')


def _fully_decoded(raw_path: str) -> str:
    """Percent-decode until the value stops changing (catches %252e%252e and friends)."""
    previous = None
    decoded = raw_path
    while decoded != previous:
        previous = decoded
        decoded = unquote(decoded)
    return decoded


def split_segments(canonical_path: str) -> List[str]:
    return [segment for segment in canonical_path.split("/") if segment]


def sanitize(raw_path: Optional[str], allow_root: bool = True) -> str:
    """Turn a user supplied relative path into its canonical form.

    The canonical form is root-relative, uses forward slashes only and contains
    no empty, ``.`` or ``..`` segments. Any ``..`` segment, in any encoding,
    rejects the whole path instead of being silently dropped.

    Args:
        raw_path: Path as received from the client. ``None`` means the root.
        allow_root: When False, a path that normalizes to the root is rejected.

    Raises:
        InvalidPath: On traversal attempts or malformed input.
    """
    if raw_path is None:
        raw_path = ""

    decoded = _fully_decoded(raw_path)
    if "\x00" in decoded:
        raise InvalidPath("Path contains a null byte")
    if len(decoded) > MAX_PATH_LENGTH:
        raise InvalidPath(f"Path too long. Maximum length is {MAX_PATH_LENGTH}")

    segments = []
    for segment in decoded.replace("\\", "/").split("/"):
        segment = segment.strip()
        if segment in ("", "."):
            continue
        if segment == "..":
            raise InvalidPath(f"Path traversal is not allowed: {raw_path}")
        if ":" in segment:
            raise InvalidPath(f"Invalid path segment: {segment}")
        segments.append(segment)

    if not segments and not allow_root:
        raise InvalidPath("Path must not point at the storage root")

    return "/".join(segments)


def join(*parts: str) -> str:
    """Join canonical paths, skipping the empty (root) ones."""
    return "/".join(part for part in parts if part)


def parent_of(canonical_path: str) -> str:
    return canonical_path.rpartition("/")[0]


def lineage(canonical_path: str) -> List[str]:
    """Every ancestor of a canonical path (root excluded), followed by the path itself.

    >>> lineage("a/b/c")
    ['a', 'a/b', 'a/b/c']
    """
    segments = split_segments(canonical_path)
    return ["/".join(segments[:depth]) for depth in range(1, len(segments) + 1)]


def display_name_of(filename: Optional[str]) -> str:
    """Reduce a client supplied filename to its last path component."""
    name = ntpath.basename((filename or "").replace("\x00", "")).strip()
    if name in (".", ".."):
        return ""
    return name


def safe_extension(display_name: str) -> str:
    extension = ntpath.splitext(display_name)[1]
    if _EXTENSION_PATTERN.match(extension):
        return extension.lower()
    return ""
