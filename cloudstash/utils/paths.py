"""
Path helpers shared by every component.

Storage keys are slash-delimited strings without a leading slash. Folder
paths are the same thing without a trailing slash; the root is "".
"""
from typing import Container, Iterator, Optional

ARCHIVE_EXTENSIONS = ("zip", "tar", "gz", "rar")
ZIP_EXTENSION = "zip"


def normalize_folder_path(path: Optional[str]) -> str:
    """Strip leading/trailing slashes. None, "" and "/" all mean root."""
    if not path:
        return ""
    return path.strip("/")


def parent_path(key: Optional[str]) -> str:
    """Parent folder of a key ("a/b/c.txt" -> "a/b", "c.txt" -> "")."""
    trimmed = (key or "").lstrip("/").rstrip("/")
    if "/" not in trimmed:
        return ""
    return trimmed.rsplit("/", 1)[0]


def folder_name(prefix: Optional[str]) -> str:
    """Last segment of a prefix, for labels."""
    if not prefix:
        return ""
    segments = [s for s in prefix.split("/") if s]
    return segments[-1] if segments else prefix


def join_key(folder: Optional[str], name: str) -> str:
    folder = normalize_folder_path(folder)
    return f"{folder}/{name}" if folder else name


def iter_ancestors(path: Optional[str]) -> Iterator[str]:
    """
    Yield the path itself, then each ancestor, nearest first.

    "a/b/c" -> "a/b/c", "a/b", "a". The root is never yielded.
    """
    current = normalize_folder_path(path)
    while current:
        yield current
        if "/" not in current:
            break
        current = current.rsplit("/", 1)[0]


def find_ancestor(path: Optional[str], members: Container[str]) -> Optional[str]:
    """Nearest of path or its ancestors contained in members, else None."""
    for candidate in iter_ancestors(path):
        if candidate in members:
            return candidate
    return None


def is_within(path: Optional[str], ancestor: Optional[str]) -> bool:
    """True if path equals ancestor or sits below it."""
    path = normalize_folder_path(path)
    ancestor = normalize_folder_path(ancestor)
    if not ancestor:
        return True
    return path == ancestor or path.startswith(ancestor + "/")


def _extension(name: str) -> str:
    base = name.rsplit("/", 1)[-1]
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[-1].lower()


def is_archive_name(name: Optional[str]) -> bool:
    if not name:
        return False
    lowered = name.lower()
    if lowered.endswith(".tar.gz"):
        return True
    return _extension(lowered) in ARCHIVE_EXTENSIONS


def is_zip_name(name: Optional[str]) -> bool:
    return bool(name) and _extension(name) == ZIP_EXTENSION
