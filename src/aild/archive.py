"""Apply a tar archive captured inside the container onto a local directory.

The archive is treated as untrusted: any entry that would land outside the
destination root, either lexically (``../../etc/passwd``) or by following a
symlink already present on disk, is skipped without raising.
"""

import io
import logging
import os
import shutil
import tarfile

from aild.errors import ApplyError

logger = logging.getLogger(__name__)

PARENT_DIR_MODE = 0o755


def is_within(root: str, path: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def resolve_target(root: str, name: str) -> str | None:
    """Join an entry name onto ``root``, returning None if it escapes.

    Absolute names are taken relative to the root, as ``tar`` itself does.
    """
    target = os.path.normpath(os.path.join(root, name.lstrip("/")))
    if not is_within(root, target):
        return None
    return target


def escapes_via_symlink(real_root: str, target: str, follow_target: bool) -> bool:
    """Check whether writing ``target`` would leave the root through a symlink.

    Symlink entries replace whatever is at ``target``, so only their parent
    directory is resolved.
    """
    path = target if follow_target else os.path.dirname(target)
    return not is_within(real_root, os.path.realpath(path))


def write_file(tar: tarfile.TarFile, member: tarfile.TarInfo, target: str) -> None:
    source = tar.extractfile(member)
    if source is None:
        raise ApplyError(f"failed to read payload for {target}")

    try:
        os.makedirs(os.path.dirname(target), PARENT_DIR_MODE, exist_ok=True)
    except OSError as e:
        raise ApplyError(f"failed to create parent directory for {target}: {e}") from e

    try:
        fd = os.open(target, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, member.mode & 0o7777)
    except OSError as e:
        raise ApplyError(f"failed to create file {target}: {e}") from e

    with os.fdopen(fd, "wb") as dst, source:
        try:
            shutil.copyfileobj(source, dst)
        except (OSError, tarfile.TarError) as e:
            raise ApplyError(f"failed to write file {target}: {e}") from e


def write_symlink(member: tarfile.TarInfo, target: str) -> None:
    try:
        os.unlink(target)
    except FileNotFoundError:
        pass
    except OSError as e:
        raise ApplyError(f"failed to replace {target} with symlink: {e}") from e

    try:
        os.symlink(member.linkname, target)
    except OSError as e:
        raise ApplyError(f"failed to create symlink {target}: {e}") from e


def apply_member(
    tar: tarfile.TarFile, member: tarfile.TarInfo, root: str, real_root: str
) -> bool:
    """Materialise a single entry. Returns False if the entry was skipped."""
    target = resolve_target(root, member.name)
    if target is None:
        logger.info(f"Skipping entry outside destination: {member.name!r}")
        return False

    if member.isdir():
        if escapes_via_symlink(real_root, target, follow_target=True):
            logger.info(f"Skipping directory behind symlink: {member.name!r}")
            return False
        try:
            os.makedirs(target, member.mode & 0o7777, exist_ok=True)
        except OSError as e:
            raise ApplyError(f"failed to create directory {target}: {e}") from e

    elif member.isreg():
        if escapes_via_symlink(real_root, target, follow_target=True):
            logger.info(f"Skipping file behind symlink: {member.name!r}")
            return False
        write_file(tar, member, target)

    elif member.issym():
        if target == root or escapes_via_symlink(real_root, target, follow_target=False):
            logger.info(f"Skipping symlink outside destination: {member.name!r}")
            return False
        write_symlink(member, target)

    else:
        logger.debug(f"Ignoring unsupported entry type for {member.name!r}")
        return False

    logger.debug(f"Applied {member.name!r} -> {target}")
    return True


def apply_archive(blob: bytes | None, dest: str | os.PathLike) -> int:
    """Extract an in-memory tar archive onto ``dest``.

    Entries are applied in archive order and overwrite what is on disk. A
    failure aborts the run but leaves already-applied entries in place.

    Args:
        blob: Tar data, or None when there is nothing to apply
        dest: Destination root directory

    Returns:
        Number of entries written
    """
    if not blob:
        return 0

    root = os.path.normpath(os.path.abspath(os.fspath(dest)))
    real_root = os.path.realpath(root)

    try:
        tar = tarfile.open(fileobj=io.BytesIO(blob), mode="r|")
    except tarfile.TarError as e:
        raise ApplyError(f"failed to read tar header: {e}") from e

    applied = 0
    with tar:
        while True:
            try:
                member = tar.next()
            except tarfile.TarError as e:
                raise ApplyError(f"failed to read tar header: {e}") from e
            if member is None:
                break
            if apply_member(tar, member, root, real_root):
                applied += 1

    logger.info(f"Applied {applied} entries to {root}")
    return applied
