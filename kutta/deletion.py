import logging
import os
from dataclasses import dataclass, field

from .errors import BadRequest, Forbidden, StorageError
from .listing import resolve_path

logger = logging.getLogger(__name__)


@dataclass
class BulkDeleteResult:
    deleted: list = field(default_factory=list)
    skipped: list = field(default_factory=list)


def ensure_deletable(config):
    if config.read_only:
        raise Forbidden("Delete not allowed in read-only mode")


def delete_uploaded(config, uploads, rel_path):
    """Remove one file, provided this process uploaded it."""
    ensure_deletable(config)
    path = resolve_path(config.base_dir, rel_path)

    if path not in uploads:
        raise Forbidden("Cannot delete existing file")

    try:
        os.remove(path)
    except OSError as e:
        logger.error("Failed to delete %s: %s", path, e)
        raise StorageError("Failed to delete file") from e
    uploads.discard(path)
    logger.info("Deleted: %s", rel_path)
    return path


def bulk_delete(config, uploads, rel_paths):
    """Delete every listed file that this process uploaded.

    Items failing the ownership gate, or failing to unlink, are skipped
    rather than reported to the client.
    """
    ensure_deletable(config)
    result = BulkDeleteResult()
    for rel_path in rel_paths:
        try:
            path = resolve_path(config.base_dir, rel_path)
        except BadRequest:
            path = None
        if path is None or path not in uploads:
            logger.debug("Bulk delete skipped (not uploaded): %s", rel_path)
            result.skipped.append(rel_path)
            continue
        try:
            os.remove(path)
        except OSError as e:
            logger.warning("Bulk delete failed for %s: %s", rel_path, e)
            result.skipped.append(rel_path)
            continue
        uploads.discard(path)
        logger.info("Bulk deleted: %s", rel_path)
        result.deleted.append(rel_path)
    return result
