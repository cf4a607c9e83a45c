"""
Disk-backed grid.

The samples live in a raw float32 temp file between operations. An
operation outside a random-access session loads the buffer, runs, saves
the result and frees the memory again. Two file names are kept per grid;
each save writes the output name and then swaps the pair, so the next
load reads what was just written and the input is never removed before
the output is complete.
"""

import contextlib
import logging
import os
from typing import Optional

import numpy as np

from .context import GridContext
from .errors import GridIOError
from .fftgrid import AccessMode, BaseGrid, Domain, FFTGrid, GridShape

logger = logging.getLogger(__name__)


class FileFFTGrid(BaseGrid):
    """
    Grid whose buffer is streamed through temporary files.

    Args:
        shape: Logical and padded extents.
        context: Supplies the working directory and unique file names.
    """

    def __init__(self, shape: GridShape, context: GridContext):
        super().__init__(shape)
        self.context = context
        self._file_in: Optional[str] = None
        self._file_out: str = context.next_file_name()
        self._buffer: Optional[np.ndarray] = None
        self._modified = False
        self._in_handle = None
        self._out_handle = None
        self._closed = False

    @property
    def file_names(self):
        """(input, output) temp file names currently in use."""
        return self._file_in, self._file_out

    @property
    def is_loaded(self) -> bool:
        return self._buffer is not None

    # -- persistence -------------------------------------------------------

    def _swap_names(self):
        previous = self._file_in
        self._file_in = self._file_out
        self._file_out = previous if previous is not None else self._file_in + "b"

    def load(self):
        buffer = np.zeros(self.shape.rsize, dtype=np.float32)
        if self._file_in is not None:
            try:
                data = np.fromfile(self._file_in, dtype=np.float32, count=self.shape.rsize)
            except OSError as exc:
                raise GridIOError(f"cannot load grid file {self._file_in}: {exc}") from exc
            buffer[: data.size] = data
            logger.debug(f"Loaded {data.size} words from {self._file_in}")
        self._buffer = buffer

    def save(self):
        try:
            self._buffer.tofile(self._file_out)
        except OSError as exc:
            raise GridIOError(f"cannot save grid file {self._file_out}: {exc}") from exc
        logger.debug(f"Saved grid to {self._file_out}")
        self.unload()
        self._swap_names()

    def unload(self):
        self._buffer = None

    def _store_zeros(self):
        self._buffer = np.zeros(self.shape.rsize, dtype=np.float32)
        self.save()

    # -- storage hooks -----------------------------------------------------

    def _reset(self, domain: Domain):
        if self._file_in is not None:
            with contextlib.suppress(FileNotFoundError):
                os.remove(self._file_in)
            self._file_in = None

    def _open_session(self, mode: AccessMode):
        try:
            if mode in (AccessMode.READ, AccessMode.READANDWRITE):
                if self._file_in is None:
                    self._store_zeros()
                self._in_handle = open(self._file_in, "rb")
            if mode in (AccessMode.WRITE, AccessMode.READANDWRITE):
                self._out_handle = open(self._file_out, "wb")
        except OSError as exc:
            self._close_handles()
            raise GridIOError(f"cannot open grid file: {exc}") from exc
        if mode is AccessMode.RANDOMACCESS:
            self._modified = False
            self.load()

    def _close_handles(self):
        if self._in_handle is not None:
            self._in_handle.close()
            self._in_handle = None
        if self._out_handle is not None:
            self._out_handle.close()
            self._out_handle = None

    def _close_session(self, mode: AccessMode):
        if mode is AccessMode.RANDOMACCESS:
            if self._modified:
                self.save()
            else:
                self.unload()
            return
        self._close_handles()
        if mode in (AccessMode.WRITE, AccessMode.READANDWRITE):
            self._swap_names()

    def _read_words(self, n: int) -> np.ndarray:
        words = np.fromfile(self._in_handle, dtype=np.float32, count=n)
        if words.size < n:
            raise GridIOError(f"unexpected end of grid file {self._file_in}")
        return words

    def _write_words(self, words: np.ndarray):
        try:
            words.tofile(self._out_handle)
        except OSError as exc:
            raise GridIOError(f"cannot write grid file {self._file_out}: {exc}") from exc

    def _apply(self, op, modifies: bool = True):
        if self.access_mode is AccessMode.RANDOMACCESS:
            if modifies:
                self._modified = True
            return op(self._buffer)
        self.load()
        try:
            result = op(self._buffer)
        except Exception:
            self.unload()
            raise
        if modifies:
            self.save()
        else:
            self.unload()
        return result

    def _live_values(self) -> np.ndarray:
        return self._buffer

    def _mark_modified(self):
        self._modified = True

    def _clone_empty(self) -> "FileFFTGrid":
        return FileFFTGrid(self.shape, self.context)

    # -- teardown ----------------------------------------------------------

    def close(self):
        """End any session and remove both backing files."""
        if self._closed:
            return
        self.end_access()
        for name in (self._file_in, self._file_out):
            if name is not None:
                with contextlib.suppress(FileNotFoundError):
                    os.remove(name)
        self._buffer = None
        self._closed = True

    def __del__(self):
        if not getattr(self, "_closed", True):
            with contextlib.suppress(Exception):
                self.close()


def create_grid(shape: GridShape, context: Optional[GridContext] = None, n_live_grids: int = 1) -> BaseGrid:
    """
    Create a spatial grid, disk-backed when the context asks for it.
    """
    if context is not None and context.wants_file_grid(shape.rsize, n_live_grids):
        return FileFFTGrid(shape, context)
    return FFTGrid(shape)
