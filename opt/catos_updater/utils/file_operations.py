"""
File operations utilities.

This module provides functions for safe path joining, archive extraction
and directory cleanup used by the update pipeline.
"""

import os
import re
import stat
import shutil
import tarfile
import zipfile
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

_WINDOWS_DRIVE = re.compile(r'^[A-Za-z]:')


def is_safe_filename(name):
    """Checks that a name is a single plain path component.

    Args:
        name: untrusted file name (e.g. from the update manifest)

    Returns:
        True if the name cannot escape the directory it is joined to
    """
    if not isinstance(name, str) or not name or name in ('.', '..'):
        return False
    if '/' in name or '\\' in name or '\x00' in name:
        return False
    if _WINDOWS_DRIVE.match(name):
        return False
    return True


def safe_join(base_dir, name):
    """Joins an untrusted file name onto base_dir.

    Args:
        base_dir: trusted directory
        name: untrusted file name

    Returns:
        Path inside base_dir

    Raises:
        ValueError: if the name is not a plain file name or resolves outside base_dir
    """
    if not is_safe_filename(name):
        raise ValueError(f"Unsafe file name: {name!r}")

    base = Path(base_dir).resolve()
    target = (base / name).resolve()
    if target.parent != base:
        raise ValueError(f"File name {name!r} escapes {base}")
    return target


def _check_member_path(dest, name):
    normalized = name.replace('\\', '/')
    member_path = Path(normalized)
    if (
        normalized.startswith('/')
        or member_path.is_absolute()
        or '..' in member_path.parts
        or (member_path.parts and _WINDOWS_DRIVE.match(member_path.parts[0]))
    ):
        raise ValueError(f"Unsafe archive entry: {name}")

    resolved = (dest / normalized).resolve()
    if resolved != dest and dest not in resolved.parents:
        raise ValueError(f"Unsafe archive entry: {name}")


def _extract_zip(source_path, dest):
    with zipfile.ZipFile(source_path, 'r') as archive:
        members = archive.infolist()
        for member in members:
            _check_member_path(dest, member.filename)
            unix_mode = (member.external_attr >> 16) & 0o170000
            if unix_mode == stat.S_IFLNK:
                raise ValueError(f"Unsafe archive entry (symlink): {member.filename}")

        archive.extractall(path=dest)

        # zipfile drops permission bits, restore them so scripts stay executable
        for member in members:
            mode = (member.external_attr >> 16) & 0o777
            if mode and not member.is_dir():
                os.chmod(dest / member.filename, mode)

    return len(members)


def _extract_tar(source_path, dest):
    with tarfile.open(source_path, 'r:*') as archive:
        members = archive.getmembers()
        for member in members:
            _check_member_path(dest, member.name)
            if member.issym() or member.islnk() or member.isdev():
                raise ValueError(f"Unsafe archive entry (link or device): {member.name}")

        archive.extractall(path=dest, filter='data')

    return len(members)


def extract_archive(source_path, dest_dir):
    """Extracts a .zip or tar archive into dest_dir. Runs in executor to avoid blocking.

    Entries with absolute paths, parent references or links are rejected
    before anything is written.

    Args:
        source_path: path to the archive
        dest_dir: destination directory for extraction

    Returns:
        number of archive members

    Raises:
        ValueError: if the archive format is unsupported or an entry is unsafe
        zipfile.BadZipFile, tarfile.TarError, OSError: on corrupt archives or I/O failures
        RuntimeError, NotImplementedError: on encrypted or unsupported zip entries
    """
    dest = Path(dest_dir).resolve()
    dest.mkdir(parents=True, exist_ok=True)

    logger.info(f"Starting extraction of {source_path} to {dest}")

    if zipfile.is_zipfile(source_path):
        count = _extract_zip(source_path, dest)
    elif tarfile.is_tarfile(source_path):
        count = _extract_tar(source_path, dest)
    else:
        raise ValueError(f"Unsupported package format: {source_path}")

    logger.info(f"Successfully extracted {count} entries from {source_path} to {dest}")
    return count


def remove_path(path):
    """Removes a file or directory tree if it exists.

    Returns:
        True if something was removed
    """
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
        return True
    if os.path.lexists(path):
        os.remove(path)
        return True
    return False
