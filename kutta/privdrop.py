import logging
import os

logger = logging.getLogger(__name__)


class PrivilegeDropError(Exception):
    pass


def lookup_user(name):
    """Return ``(uid, gid)`` for a UNIX account name."""
    import pwd

    try:
        entry = pwd.getpwnam(name)
    except KeyError:
        raise PrivilegeDropError(f"Failed to find user: {name}") from None
    return entry.pw_uid, entry.pw_gid


def drop_privileges(uid, gid):
    # group first: once the uid is gone setgid is no longer permitted
    try:
        os.setgid(gid)
    except OSError as e:
        raise PrivilegeDropError(f"Setgid failed: {e}") from e
    try:
        os.setuid(uid)
    except OSError as e:
        raise PrivilegeDropError(f"Setuid failed: {e}") from e
    logger.info("Dropped privileges to uid=%d gid=%d", uid, gid)


def drop_to_user(name):
    uid, gid = lookup_user(name)
    drop_privileges(uid, gid)
