"""
Working-directory context shared by all grids of one inversion run.

Owns the temp-file counter and the memory/disk policy, so that several
runs (or tests) never share backing files.
"""

import itertools
import logging
import os
import shutil
import tempfile
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class GridContext:
    """
    Working directory and naming policy for disk-backed grids.

    Args:
        work_dir: Directory for temporary grid files. A fresh temporary
            directory is created (and removed on close) when omitted.
        use_file_grids: Always back new grids by disk files.
        max_memory_bytes: Switch to disk-backed grids when the estimated
            footprint of one grid times `n_live_grids` exceeds this.
        prefix: File name prefix for temporary grids.
    """

    def __init__(
        self,
        work_dir: Optional[str] = None,
        use_file_grids: bool = False,
        max_memory_bytes: Optional[int] = None,
        prefix: str = "tmpgrid",
    ):
        if work_dir is None:
            self.work_dir = tempfile.mkdtemp(prefix="bayesseis_")
            self._owns_dir = True
        else:
            os.makedirs(work_dir, exist_ok=True)
            self.work_dir = work_dir
            self._owns_dir = False
        self.use_file_grids = use_file_grids
        self.max_memory_bytes = max_memory_bytes
        self.prefix = prefix
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def next_file_name(self) -> str:
        """Return a process-unique path for a new temporary grid file."""
        with self._lock:
            n = next(self._counter)
        return os.path.join(self.work_dir, f"{self.prefix}{n}")

    def wants_file_grid(self, rsize: int, n_live_grids: int = 1) -> bool:
        """Decide whether a grid of `rsize` float32 words goes to disk."""
        if self.use_file_grids:
            return True
        if self.max_memory_bytes is None:
            return False
        return 4 * rsize * n_live_grids > self.max_memory_bytes

    def close(self):
        if self._owns_dir and os.path.isdir(self.work_dir):
            logger.debug(f"Removing grid work directory {self.work_dir}")
            shutil.rmtree(self.work_dir, ignore_errors=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
