"""
Atomic file writes — temp file in the target directory, then rename.

A crash mid-write leaves either the old file or the new one, never a
truncated mix.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, content: str, *, prefix: str = ".trellis_") -> None:
    """Write ``content`` to ``path`` atomically.

    Args:
        path: Target file; parent directories are created.
        content: Text to write (UTF-8, newlines written as given).
        prefix: Prefix of the temporary file in the target directory.

    Raises:
        OSError: If the directory cannot be created or the write fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=prefix, suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
            fh.write(content)
        tmp.replace(path)
        logger.debug("Wrote %s (%d bytes)", path, len(content))
    except Exception:
        tmp.unlink(missing_ok=True)
        raise
