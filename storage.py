"""
Upload storage - decides where an uploaded part lands inside the upload
folder and writes it there without ever exposing a half-written file.
"""

import os
import shutil
import tempfile
import logging
from dataclasses import dataclass
from pathlib import PureWindowsPath

logger = logging.getLogger(__name__)

# Hidden temp files live next to their target so os.replace stays on one filesystem
TEMP_PREFIX = ".upload-"
TEMP_SUFFIX = ".part"
CHUNK_SIZE = 1 * 1024 * 1024
FILE_MODE = 0o644


class StorageIOError(Exception):
    """Writing an uploaded file to disk failed."""


@dataclass(frozen=True)
class Resolved:
    filename: str
    path: str


@dataclass(frozen=True)
class Rejected:
    filename: str
    reason: str


def resolve_target(upload_root, declared_name, original_name):
    """Pick the name to store a part under and map it into upload_root.

    A non-empty ``declared_name`` (the form field ``file``) wins over the
    part's own filename. Names are used verbatim, but anything that could
    point outside ``upload_root`` is refused. Returns ``Resolved`` or
    ``Rejected``; never raises.
    """
    filename = declared_name or original_name or ""

    if not filename:
        return Rejected(filename, "empty filename")
    if "\x00" in filename:
        return Rejected(filename, "filename contains a NUL byte")
    if filename in (".", ".."):
        return Rejected(filename, "not a file name")
    if os.path.isabs(filename):
        return Rejected(filename, "absolute paths are not allowed")
    # "a:b.txt" is an ordinary name on POSIX but drive-relative on Windows
    if os.name == "nt" and PureWindowsPath(filename).drive:
        return Rejected(filename, "drive-qualified names are not allowed")
    if "/" in filename or "\\" in filename:
        return Rejected(filename, "path separators are not allowed")
    if filename.startswith(TEMP_PREFIX) and filename.endswith(TEMP_SUFFIX):
        return Rejected(filename, "name is reserved for uploads in progress")

    root = os.path.abspath(upload_root)
    path = os.path.normpath(os.path.join(root, filename))
    if os.path.dirname(path) != root:
        return Rejected(filename, "escapes the upload folder")

    return Resolved(filename, path)


def _copy_stream(stream, f):
    shutil.copyfileobj(stream, f, length=CHUNK_SIZE)


def _discard(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove temp file %s: %s", path, e)


def stage_file(stream, target):
    """Copy ``stream`` into a hidden temp file beside ``target.path``."""
    fd, tmp_path = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX,
                                    dir=os.path.dirname(target.path))
    try:
        with os.fdopen(fd, "wb") as f:
            _copy_stream(stream, f)
        os.chmod(tmp_path, FILE_MODE)
    except BaseException:
        _discard(tmp_path)
        raise
    return tmp_path


def store_files(pending):
    """Write every ``(stream, Resolved)`` pair and return the stored paths.

    All parts are staged first and only then renamed into place, in
    submission order, so a later part with the same name wins. If staging
    fails nothing is renamed and existing files are left alone. A failure
    while renaming leaves the parts renamed so far in place.
    """
    staged = []
    try:
        for stream, target in pending:
            staged.append((stage_file(stream, target), target))
    except OSError as e:
        for tmp_path, _ in staged:
            _discard(tmp_path)
        raise StorageIOError(f"Could not write {target.filename}: {e.strerror or e}") from e
    except BaseException:
        for tmp_path, _ in staged:
            _discard(tmp_path)
        raise

    stored = []
    for i, (tmp_path, target) in enumerate(staged):
        try:
            os.replace(tmp_path, target.path)
        except OSError as e:
            for leftover, _ in staged[i:]:
                _discard(leftover)
            raise StorageIOError(f"Could not save {target.filename}: {e.strerror or e}") from e
        stored.append(target.path)
    return stored
