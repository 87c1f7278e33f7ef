"""Helpers for remote paths, file names, and uploaded content checks.

Everything here is pure: paths are validated before any command is rendered,
so a rejected request never reaches the remote host.
"""

import posixpath
import re

from mcfleet.core.exceptions import InvalidRequest, PathTraversalRejected

# Extensions whose content may be read or edited as text
TEXT_EXTENSIONS = frozenset({
    ".txt", ".properties", ".json", ".yml", ".yaml", ".toml",
    ".cfg", ".conf", ".ini", ".log", ".md", ".mcmeta", ".csv",
})

# Executable archives are only accepted below these top-level directories
ARCHIVE_DIRECTORIES = frozenset({"plugins", "mods"})

MAX_TEXT_FILE_BYTES = 128 * 1024

_ZIP_SIGNATURES = (b"PK\x03\x04", b"PK\x05\x06")
_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def resolve_within(root: str, requested: str | None) -> str:
    """Resolve ``requested`` against ``root``; reject anything escaping it.

    Empty, ``"."`` and ``"~"`` mean the root itself.  Absolute paths are
    accepted only when they already lie inside the root.
    """
    root = posixpath.normpath(root)
    if not requested or requested in (".", "~"):
        return root
    if "\0" in requested:
        raise PathTraversalRejected(requested)
    resolved = posixpath.normpath(posixpath.join(root, requested))
    if resolved != root and not resolved.startswith(root.rstrip("/") + "/"):
        raise PathTraversalRejected(requested)
    return resolved


def relative_to_root(root: str, path: str) -> str:
    rel = posixpath.relpath(path, posixpath.normpath(root))
    return "" if rel == "." else rel


def extension_of(name: str) -> str:
    _, ext = posixpath.splitext(name)
    return ext.lower()


def ensure_text_file(path: str) -> None:
    if extension_of(path) not in TEXT_EXTENSIONS:
        raise InvalidRequest(
            f"Only text files can be viewed or edited ({', '.join(sorted(TEXT_EXTENSIONS))})"
        )


def sanitize_filename(filename: str) -> str:
    """Strip directory components and restrict to ``[A-Za-z0-9._-]``."""
    name = posixpath.basename((filename or "").replace("\\", "/"))
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).lstrip(".")
    if not name or name.strip("_") == "":
        raise InvalidRequest("Invalid file name")
    return name[:255]


def _looks_like_text(content: bytes) -> bool:
    if b"\0" in content:
        return False
    try:
        content.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


def validate_upload(filename: str, content: bytes, destination_rel: str, max_bytes: int) -> str:
    """Check an upload against its declared extension and destination.

    Returns the sanitized file name.  ``destination_rel`` is the destination
    directory relative to the server root ("" for the root itself).
    """
    name = sanitize_filename(filename)
    if len(content) > max_bytes:
        raise InvalidRequest(f"File exceeds the {max_bytes // (1024 * 1024)} MB upload limit")
    if not content:
        raise InvalidRequest("Uploaded file is empty")

    ext = extension_of(name)
    top_level = destination_rel.split("/", 1)[0] if destination_rel else ""

    if ext == ".jar":
        if top_level not in ARCHIVE_DIRECTORIES:
            raise InvalidRequest("JAR files can only be uploaded to the plugins or mods directory")
        if not content.startswith(_ZIP_SIGNATURES):
            raise InvalidRequest("File content is not a valid JAR archive")
    elif ext == ".zip":
        if not content.startswith(_ZIP_SIGNATURES):
            raise InvalidRequest("File content is not a valid ZIP archive")
    elif ext == ".png":
        if not content.startswith(_PNG_SIGNATURE):
            raise InvalidRequest("File content is not a valid PNG image")
    elif ext in TEXT_EXTENSIONS:
        if not _looks_like_text(content):
            raise InvalidRequest("File content is not valid UTF-8 text")
    else:
        raise InvalidRequest(f"File type {ext or '(none)'} is not allowed")
    return name
