"""Directory listing: per-entry metadata, filtering and sorting."""

import datetime
import logging
import os
from dataclasses import dataclass, field

from .config import ICON_TABLE
from .errors import BadRequest, StorageError

logger = logging.getLogger(__name__)

# RFC 822, e.g. "02 Jan 06 15:04 UTC"
MTIME_FORMAT = '%d %b %y %H:%M %Z'


@dataclass
class FileEntry:
    name: str
    size: str
    mod_time: str
    icon: str
    is_dir: bool


@dataclass
class DirectoryListing:
    directory: str
    rel_path: str
    parent_path: str
    entries: list = field(default_factory=list)


def resolve_path(base_dir, rel_path):
    """Join a request path onto the base directory and return it absolute."""
    rel_path = (rel_path or '').lstrip('/')
    if '\x00' in rel_path:
        raise BadRequest("Invalid path")
    return os.path.abspath(os.path.join(base_dir, rel_path))


def human_size(size):
    if size < 1024:
        return f"{size} B"
    for unit in ['KB', 'MB']:
        size /= 1024.0
        if size < 1024.0:
            return f"{size:.1f} {unit}"
    return f"{size / 1024.0:.1f} GB"


def format_mtime(mtime):
    return datetime.datetime.fromtimestamp(mtime).astimezone().strftime(MTIME_FORMAT)


def icon_for(name, is_dir=False):
    if is_dir:
        return 'folder'
    ext = os.path.splitext(name)[1].lower()
    return ICON_TABLE.get(ext, 'document')


def parent_of(rel_path):
    """Path of the ".." link; empty when already at, or directly below, the base."""
    rel_path = rel_path.strip('/')
    if rel_path in ('', '.'):
        return ''
    parent = os.path.dirname(rel_path)
    return '' if parent == '.' else parent


def list_directory(base_dir, rel_path='', query='', uploads=None):
    """Build the listing of ``rel_path`` below ``base_dir``.

    ``query`` is a case-insensitive substring filter on entry names.  When
    ``uploads`` is given, only entries whose absolute path it contains are
    kept (uploads-only listing mode).  Entries whose metadata cannot be read
    are skipped; an unreadable directory raises StorageError.
    """
    rel_path = rel_path.strip('/')
    if rel_path == '':
        rel_path = '.'
    directory = resolve_path(base_dir, rel_path)

    try:
        names = os.listdir(directory)
    except OSError as e:
        logger.error("Failed to list %s: %s", directory, e)
        raise StorageError("Failed to list directory") from e

    query = (query or '').lower()
    entries = []
    for name in names:
        if query and query not in name.lower():
            continue
        fullname = os.path.join(directory, name)
        if uploads is not None and fullname not in uploads:
            continue
        try:
            st = os.stat(fullname)
        except OSError:
            continue
        is_dir = os.path.isdir(fullname)
        entries.append(FileEntry(
            name=name,
            size=human_size(st.st_size),
            mod_time=format_mtime(st.st_mtime),
            icon=icon_for(name, is_dir),
            is_dir=is_dir,
        ))

    entries.sort(key=lambda e: e.name)

    return DirectoryListing(
        directory=directory,
        rel_path=rel_path,
        parent_path=parent_of(rel_path),
        entries=entries,
    )
