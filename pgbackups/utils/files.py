"""
Local file helpers for backup artifacts.
"""

import logging
import os
from typing import BinaryIO


logger = logging.getLogger(__name__)


def open_private(path: str) -> BinaryIO:
    """
    Open path for binary writing with owner-only (600) permissions.

    The mode is applied when the file is created, before any data is
    written, so dump contents are never readable by other users.
    """
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    # O_CREAT ignores the mode for files that already exist
    os.fchmod(fd, 0o600)
    return os.fdopen(fd, 'wb')


def remove_quietly(path: str) -> bool:
    """
    Delete a file if it exists, logging instead of raising on failure.

    Returns:
        True if the file is gone afterwards
    """
    try:
        if os.path.exists(path):
            os.remove(path)
        return True
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
        return False
