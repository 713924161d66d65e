"""
SHA-256 package verification.

Verification never deletes anything; the caller decides what to do with a
file that fails.
"""

import hashlib
import logging

logger = logging.getLogger(__name__)


def compute_sha256(file_path, chunk_size=1024 * 1024):
    """Computes the hex SHA-256 digest of a file. Raises OSError if it cannot be read."""
    sha256_hash = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


def verify_checksum(file_path, expected_hex_digest):
    """
    Checks a file against an expected SHA-256 hex digest, ignoring case.

    Returns:
        bool: True on match, False on mismatch

    Raises:
        OSError: If the file cannot be read
    """
    actual = compute_sha256(file_path)
    if actual != str(expected_hex_digest).strip().lower():
        logger.error(f"SHA256 mismatch for {file_path}. Expected: {expected_hex_digest}, actual: {actual}")
        return False

    logger.info(f"Checksum verified for {file_path}")
    return True
