"""
Snapshot freshness checks based on file modification time.
"""

import time
from pathlib import Path
from typing import Optional

from ..utils.logger import get_logger


logger = get_logger(__name__)


def snapshot_age(path: Path, now: Optional[float] = None) -> Optional[float]:
    """
    Get seconds since the snapshot file was last written.

    Returns None if the file is missing or cannot be inspected.
    """
    try:
        mtime = Path(path).stat().st_mtime
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.error(f"Error checking snapshot {path}: {e}")
        return None

    if now is None:
        now = time.time()
    return now - mtime


def has_recent_snapshot(path: Path, max_age: float, now: Optional[float] = None) -> bool:
    """Check that the snapshot exists and is younger than ``max_age`` seconds."""
    age = snapshot_age(path, now)
    return age is not None and age < max_age
