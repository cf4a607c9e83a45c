"""
Padded 3D grids that are transformed in place between the spatial and
the frequency domain.

The sample buffer is one float32 array of `rsize` words laid out as
`i + rnxp*j + k*rnxp*nyp`. In the frequency domain the same words are
read as complex64 values of shape (nzp, nyp, cnxp), which is the layout of
a real-to-complex transform along x.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

import numpy as np
from scipy import fft as sfft

from .errors import AccessModeError, GridIOError

logger = logging.getLogger(__name__)

MISSING = -99999.0


class Domain(Enum):
    SPATIAL = "spatial"
    FREQUENCY = "frequency"


class AccessMode(Enum):
    NONE = 0
    READ = 1
    WRITE = 2
    READANDWRITE = 3
    RANDOMACCESS = 4


# A session is opened from NONE and closed back to NONE.
_TRANSITIONS = {
    AccessMode.NONE: frozenset(
        {AccessMode.READ, AccessMode.WRITE, AccessMode.READANDWRITE, AccessMode.RANDOMACCESS}
    ),
    AccessMode.READ: frozenset({AccessMode.NONE}),
    AccessMode.WRITE: frozenset({AccessMode.NONE}),
    AccessMode.READANDWRITE: frozenset({AccessMode.NONE}),
    AccessMode.RANDOMACCESS: frozenset({AccessMode.NONE}),
}

_READ_MODES = frozenset({AccessMode.READ, AccessMode.READANDWRITE})
_WRITE_MODES = frozenset({AccessMode.WRITE, AccessMode.READANDWRITE})
_BULK_MODES = frozenset({AccessMode.NONE, AccessMode.RANDOMACCESS})


def legal_transition(current: AccessMode, target: AccessMode) -> bool:
    """True if a grid in `current` may move to `target`."""
    return target in _TRANSITIONS[current]


@dataclass(frozen=True)
class GridShape:
    """
    Logical and padded extents of a grid.

    Attributes:
        nx, ny, nz: Logical extents.
        nxp, nyp, nzp: Padded extents used by the transforms.
    """
    nx: int
    ny: int
    nz: int
    nxp: int
    nyp: int
    nzp: int

    def __post_init__(self):
        for name in ("nx", "ny", "nz"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive")
        for name in ("x", "y", "z"):
            if getattr(self, f"n{name}p") < getattr(self, f"n{name}"):
                raise ValueError(f"n{name}p must not be smaller than n{name}")

    @classmethod
    def padded(cls, nx: int, ny: int, nz: int, min_pad_fraction: float = 0.0) -> "GridShape":
        """Pad each extent to the next size with a fast transform."""
        pads = [
            sfft.next_fast_len(int(np.ceil(n * (1.0 + min_pad_fraction))), real=True)
            for n in (nx, ny, nz)
        ]
        return cls(nx, ny, nz, *pads)

    @property
    def cnxp(self) -> int:
        return self.nxp // 2 + 1

    @property
    def rnxp(self) -> int:
        return 2 * self.cnxp

    @property
    def rsize(self) -> int:
        return self.rnxp * self.nyp * self.nzp

    @property
    def csize(self) -> int:
        return self.cnxp * self.nyp * self.nzp

    @property
    def n_padded(self) -> int:
        """Number of samples in the padded transform block."""
        return self.nxp * self.nyp * self.nzp

    @property
    def slab_words(self) -> int:
        """Float32 words in one z-slab."""
        return self.rnxp * self.nyp

    @property
    def real_shape(self) -> Tuple[int, int, int]:
        return (self.nzp, self.nyp, self.rnxp)

    @property
    def complex_shape(self) -> Tuple[int, int, int]:
        return (self.nzp, self.nyp, self.cnxp)

    def same_padding(self, other: "GridShape") -> bool:
        return (self.nxp, self.nyp, self.nzp) == (other.nxp, other.nyp, other.nzp)


def extend_into_padding(values: np.ndarray, shape: GridShape) -> np.ndarray:
    """
    Extend an (nx, ny, nz) array over the padded block.

    Each padded sample blends linearly from the last logical sample back to
    the first one along the axis, so the periodic extension has no jump at
    either edge of the box.

    Returns:
        (nxp, nyp, nzp) float array whose logical corner equals `values`.
    """
    arr = np.asarray(values, dtype=float)
    if arr.shape != (shape.nx, shape.ny, shape.nz):
        raise ValueError(f"array must have shape {(shape.nx, shape.ny, shape.nz)}, got {arr.shape}")
    padded_sizes = (shape.nxp, shape.nyp, shape.nzp)
    for axis, n_pad in enumerate(padded_sizes):
        n = arr.shape[axis]
        extra = n_pad - n
        if extra == 0:
            continue
        first = np.take(arr, [0], axis=axis)
        last = np.take(arr, [n - 1], axis=axis)
        t_shape = [1, 1, 1]
        t_shape[axis] = extra
        t = (np.arange(1, extra + 1) / (extra + 1)).reshape(t_shape)
        arr = np.concatenate([arr, last + (first - last) * t], axis=axis)
    return arr


class BaseGrid(ABC):
    """
    Capability set shared by memory-resident and disk-backed grids.

    Subclasses provide buffer storage through `_apply`, `_live_values` and
    the sequential word transfer hooks; everything else lives here.
    """

    def __init__(self, shape: GridShape):
        self.shape = shape
        self.domain = Domain.SPATIAL
        self.access_mode = AccessMode.NONE

    # -- storage hooks -----------------------------------------------------

    @abstractmethod
    def _reset(self, domain: Domain):
        """Drop current contents and start from zeros in `domain`."""

    @abstractmethod
    def _open_session(self, mode: AccessMode):
        pass

    @abstractmethod
    def _close_session(self, mode: AccessMode):
        pass

    @abstractmethod
    def _read_words(self, n: int) -> np.ndarray:
        pass

    @abstractmethod
    def _write_words(self, words: np.ndarray):
        pass

    @abstractmethod
    def _apply(self, op: Callable[[np.ndarray], object], modifies: bool = True):
        """Run `op` on the full float32 buffer and return its result."""

    @abstractmethod
    def _live_values(self) -> np.ndarray:
        """Buffer of an open random-access session."""

    @abstractmethod
    def _mark_modified(self):
        pass

    @abstractmethod
    def _clone_empty(self) -> "BaseGrid":
        pass

    # -- extents -----------------------------------------------------------

    @property
    def nx(self) -> int:
        return self.shape.nx

    @property
    def ny(self) -> int:
        return self.shape.ny

    @property
    def nz(self) -> int:
        return self.shape.nz

    @property
    def nxp(self) -> int:
        return self.shape.nxp

    @property
    def nyp(self) -> int:
        return self.shape.nyp

    @property
    def nzp(self) -> int:
        return self.shape.nzp

    @property
    def is_transformed(self) -> bool:
        return self.domain is Domain.FREQUENCY

    # -- contract checks ---------------------------------------------------

    def _require_modes(self, allowed, what: str):
        if self.access_mode not in allowed:
            raise AccessModeError(f"{what} is not allowed in access mode {self.access_mode.name}")

    def _require_domain(self, domain: Domain, what: str):
        if self.domain is not domain:
            raise AccessModeError(f"{what} requires a {domain.value} grid, grid is {self.domain.value}")

    def _check_compatible(self, other: "BaseGrid", what: str):
        if not self.shape.same_padding(other.shape):
            raise ValueError(f"{what}: padded extents differ")
        if self.domain is not other.domain:
            raise AccessModeError(f"{what}: grids are in different domains")

    # -- life cycle and sessions -------------------------------------------

    def create_real_grid(self):
        self._require_modes({AccessMode.NONE}, "create_real_grid")
        self._reset(Domain.SPATIAL)
        self.domain = Domain.SPATIAL

    def create_complex_grid(self):
        self._require_modes({AccessMode.NONE}, "create_complex_grid")
        self._reset(Domain.FREQUENCY)
        self.domain = Domain.FREQUENCY

    def set_access_mode(self, mode: AccessMode):
        if mode is AccessMode.NONE or not legal_transition(self.access_mode, mode):
            raise AccessModeError(
                f"cannot open {mode.name} session while in {self.access_mode.name}"
            )
        self._open_session(mode)
        self.access_mode = mode

    def end_access(self):
        """Close the open session; a no-op when no session is open."""
        mode = self.access_mode
        if mode is AccessMode.NONE:
            return
        self._close_session(mode)
        self.access_mode = AccessMode.NONE

    def close(self):
        self.end_access()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # -- sequential access -------------------------------------------------

    def _next_words(self, n: int, what: str) -> np.ndarray:
        self._require_modes(_READ_MODES, what)
        return self._read_words(n)

    def _put_words(self, words: np.ndarray, what: str):
        self._require_modes(_WRITE_MODES, what)
        self._write_words(np.ascontiguousarray(words, dtype=np.float32).ravel())

    def get_next_real(self) -> float:
        self._require_domain(Domain.SPATIAL, "get_next_real")
        return float(self._next_words(1, "get_next_real")[0])

    def set_next_real(self, value: float):
        self._require_domain(Domain.SPATIAL, "set_next_real")
        self._put_words(np.array([value], dtype=np.float32), "set_next_real")

    def get_next_complex(self) -> complex:
        self._require_domain(Domain.FREQUENCY, "get_next_complex")
        words = self._next_words(2, "get_next_complex")
        return complex(float(words[0]), float(words[1]))

    def set_next_complex(self, value: complex):
        self._require_domain(Domain.FREQUENCY, "set_next_complex")
        self._put_words(np.array([value.real, value.imag], dtype=np.float32), "set_next_complex")

    def get_next_real_slice(self) -> np.ndarray:
        """Next z-slab of shape (nyp, rnxp)."""
        self._require_domain(Domain.SPATIAL, "get_next_real_slice")
        words = self._next_words(self.shape.slab_words, "get_next_real_slice")
        return words.reshape(self.nyp, self.shape.rnxp)

    def set_next_real_slice(self, values: np.ndarray):
        self._require_domain(Domain.SPATIAL, "set_next_real_slice")
        arr = np.asarray(values, dtype=np.float32)
        if arr.shape != (self.nyp, self.shape.rnxp):
            raise ValueError(f"slab must have shape {(self.nyp, self.shape.rnxp)}, got {arr.shape}")
        self._put_words(arr, "set_next_real_slice")

    def get_next_complex_slice(self) -> np.ndarray:
        """Next z-slab of shape (nyp, cnxp)."""
        self._require_domain(Domain.FREQUENCY, "get_next_complex_slice")
        words = self._next_words(self.shape.slab_words, "get_next_complex_slice")
        return words.view(np.complex64).reshape(self.nyp, self.shape.cnxp)

    def set_next_complex_slice(self, values: np.ndarray):
        self._require_domain(Domain.FREQUENCY, "set_next_complex_slice")
        arr = np.ascontiguousarray(values, dtype=np.complex64)
        if arr.shape != (self.nyp, self.shape.cnxp):
            raise ValueError(f"slab must have shape {(self.nyp, self.shape.cnxp)}, got {arr.shape}")
        self._put_words(arr.view(np.float32), "set_next_complex_slice")

    # -- random access -----------------------------------------------------

    def _in_logical_box(self, i: int, j: int, k: int) -> bool:
        return 0 <= i < self.nx and 0 <= j < self.ny and 0 <= k < self.nz

    def get_real_value(self, i: int, j: int, k: int) -> float:
        """Sample at (i, j, k); MISSING outside the logical box."""
        self._require_domain(Domain.SPATIAL, "get_real_value")
        self._require_modes({AccessMode.RANDOMACCESS}, "get_real_value")
        if not self._in_logical_box(i, j, k):
            return MISSING
        index = i + self.shape.rnxp * j + k * self.shape.rnxp * self.nyp
        return float(self._live_values()[index])

    def set_real_value(self, i: int, j: int, k: int, value: float) -> bool:
        """
        Store a sample. Returns False, leaving the buffer untouched, when
        (i, j, k) lies outside the logical box.
        """
        self._require_domain(Domain.SPATIAL, "set_real_value")
        self._require_modes({AccessMode.RANDOMACCESS}, "set_real_value")
        if not self._in_logical_box(i, j, k):
            return False
        index = i + self.shape.rnxp * j + k * self.shape.rnxp * self.nyp
        self._live_values()[index] = value
        self._mark_modified()
        return True

    def get_complex_value(self, i: int, j: int, k: int) -> complex:
        self._require_domain(Domain.FREQUENCY, "get_complex_value")
        self._require_modes({AccessMode.RANDOMACCESS}, "get_complex_value")
        if not (0 <= i < self.shape.cnxp and 0 <= j < self.nyp and 0 <= k < self.nzp):
            return complex(MISSING, 0.0)
        values = self._live_values().view(np.complex64).reshape(self.shape.complex_shape)
        return complex(values[k, j, i])

    def set_complex_value(self, i: int, j: int, k: int, value: complex) -> bool:
        self._require_domain(Domain.FREQUENCY, "set_complex_value")
        self._require_modes({AccessMode.RANDOMACCESS}, "set_complex_value")
        if not (0 <= i < self.shape.cnxp and 0 <= j < self.nyp and 0 <= k < self.nzp):
            return False
        values = self._live_values().view(np.complex64).reshape(self.shape.complex_shape)
        values[k, j, i] = value
        self._mark_modified()
        return True

    # -- transforms --------------------------------------------------------

    def fft_in_place(self):
        """Forward real-to-complex transform of the padded block."""
        self._require_modes(_BULK_MODES, "fft_in_place")
        self._require_domain(Domain.SPATIAL, "fft_in_place")
        shape = self.shape

        def op(values):
            real = values.reshape(shape.real_shape)[:, :, : shape.nxp]
            spectrum = sfft.rfftn(real, axes=(0, 1, 2))
            values.view(np.complex64).reshape(shape.complex_shape)[...] = spectrum

        self._apply(op)
        self.domain = Domain.FREQUENCY

    def inv_fft_in_place(self):
        """Inverse transform, scaled so that forward then inverse is identity."""
        self._require_modes(_BULK_MODES, "inv_fft_in_place")
        self._require_domain(Domain.FREQUENCY, "inv_fft_in_place")
        shape = self.shape

        def op(values):
            spectrum = values.view(np.complex64).reshape(shape.complex_shape).copy()
            real = sfft.irfftn(spectrum, s=(shape.nzp, shape.nyp, shape.nxp), axes=(0, 1, 2))
            words = values.reshape(shape.real_shape)
            words[:, :, : shape.nxp] = real
            words[:, :, shape.nxp:] = 0.0

        self._apply(op)
        self.domain = Domain.SPATIAL

    # -- algebra -----------------------------------------------------------

    def _stream_from(self, other: "BaseGrid", combine: Callable[[np.ndarray, np.ndarray], None]):
        shape = self.shape

        def op(values):
            words = values.reshape(shape.real_shape)
            if other is self:
                # Aliased operand: combine with a snapshot of the live buffer.
                source = words.copy()
                for k in range(shape.nzp):
                    combine(words[k], source[k])
                return
            other.set_access_mode(AccessMode.READ)
            try:
                for k in range(shape.nzp):
                    slab = other._next_words(shape.slab_words, "read").reshape(shape.nyp, shape.rnxp)
                    combine(words[k], slab)
            finally:
                other.end_access()

        self._apply(op)

    def add(self, other: "BaseGrid"):
        self._require_modes(_BULK_MODES, "add")
        self._check_compatible(other, "add")

        def combine(target, slab):
            target += slab

        self._stream_from(other, combine)

    def multiply(self, other: "BaseGrid"):
        """
        Elementwise product. Complex grids are multiplied component by
        component (re*re, im*im), not as complex numbers.
        """
        self._require_modes(_BULK_MODES, "multiply")
        self._check_compatible(other, "multiply")

        def combine(target, slab):
            target *= slab

        self._stream_from(other, combine)

    def multiply_by_scalar(self, scalar: float):
        self._require_modes(_BULK_MODES, "multiply_by_scalar")

        def op(values):
            values *= np.float32(scalar)

        self._apply(op)

    def square(self):
        """Square samples; in the frequency domain store |z|^2."""
        self._require_modes(_BULK_MODES, "square")
        shape = self.shape
        domain = self.domain

        def op(values):
            if domain is Domain.SPATIAL:
                real = values.reshape(shape.real_shape)[:, :, : shape.nxp]
                np.square(real, out=real)
            else:
                spectrum = values.view(np.complex64)
                spectrum[...] = np.abs(spectrum) ** 2

        self._apply(op)

    def exp_transf(self):
        self._require_modes(_BULK_MODES, "exp_transf")
        self._require_domain(Domain.SPATIAL, "exp_transf")
        shape = self.shape

        def op(values):
            real = values.reshape(shape.real_shape)[:, :, : shape.nxp]
            np.exp(real, out=real)

        self._apply(op)

    def log_transf(self):
        """Natural logarithm; non-positive samples become 0."""
        self._require_modes(_BULK_MODES, "log_transf")
        self._require_domain(Domain.SPATIAL, "log_transf")
        shape = self.shape

        def op(values):
            real = values.reshape(shape.real_shape)[:, :, : shape.nxp]
            positive = real > 0.0
            with np.errstate(divide="ignore", invalid="ignore"):
                real[...] = np.where(positive, np.log(np.where(positive, real, 1.0)), 0.0)

        self._apply(op)

    def collapse_and_add(self, target: np.ndarray):
        """Add the sum over logical k into `target` of shape (nx, ny)."""
        self._require_modes(_BULK_MODES, "collapse_and_add")
        self._require_domain(Domain.SPATIAL, "collapse_and_add")
        if target.shape != (self.nx, self.ny):
            raise ValueError(f"target must have shape {(self.nx, self.ny)}")
        shape = self.shape

        def op(values):
            nonlocal target
            real = values.reshape(shape.real_shape)[: shape.nz, : shape.ny, : shape.nx]
            target += real.sum(axis=0, dtype=np.float64).T

        self._apply(op, modifies=False)
        return target

    def fill_in_complex_noise(self, rng: Optional[np.random.Generator] = None):
        """
        Replace the spectrum with that of a white N(0, 1) field on the padded
        block, so the inverse transform has unit variance.
        """
        self._require_modes(_BULK_MODES, "fill_in_complex_noise")
        self._require_domain(Domain.FREQUENCY, "fill_in_complex_noise")
        rng = np.random.default_rng() if rng is None else rng
        shape = self.shape

        def op(values):
            white = rng.standard_normal((shape.nzp, shape.nyp, shape.nxp)).astype(np.float32)
            values.view(np.complex64).reshape(shape.complex_shape)[...] = sfft.rfftn(white, axes=(0, 1, 2))

        self._apply(op)

    # -- bulk transfer -----------------------------------------------------

    def fill_from_array(self, array: np.ndarray, padded: bool = False):
        """
        Overwrite the grid from an (nx, ny, nz) array, zeroing the padding.
        With `padded` the array covers the whole (nxp, nyp, nzp) block.
        """
        self._require_modes(_BULK_MODES, "fill_from_array")
        self._require_domain(Domain.SPATIAL, "fill_from_array")
        arr = np.asarray(array, dtype=np.float32)
        shape = self.shape
        if padded:
            expected = (shape.nxp, shape.nyp, shape.nzp)
        else:
            expected = (shape.nx, shape.ny, shape.nz)
        if arr.shape != expected:
            raise ValueError(f"array must have shape {expected}, got {arr.shape}")

        def op(values):
            values[...] = 0.0
            nx, ny, nz = expected
            values.reshape(shape.real_shape)[:nz, :ny, :nx] = arr.T

        self._apply(op)

    def to_array(self) -> np.ndarray:
        """Copy of the logical box as an (nx, ny, nz) float array."""
        self._require_modes(_BULK_MODES, "to_array")
        self._require_domain(Domain.SPATIAL, "to_array")
        shape = self.shape

        def op(values):
            real = values.reshape(shape.real_shape)[: shape.nz, : shape.ny, : shape.nx]
            return np.array(real.T, dtype=float)

        return self._apply(op, modifies=False)

    def spectrum(self) -> np.ndarray:
        """Copy of the complex buffer, shape (nzp, nyp, cnxp)."""
        self._require_modes(_BULK_MODES, "spectrum")
        self._require_domain(Domain.FREQUENCY, "spectrum")
        shape = self.shape
        return self._apply(
            lambda values: values.view(np.complex64).reshape(shape.complex_shape).copy(),
            modifies=False,
        )

    def copy(self, target: Optional["BaseGrid"] = None) -> "BaseGrid":
        """
        Copy the samples into `target`, or into a new grid of the same
        realization when no target is given.
        """
        self._require_modes({AccessMode.NONE}, "copy")
        if target is None:
            clone = self._clone_empty()
        else:
            if not self.shape.same_padding(target.shape):
                raise ValueError("copy: padded extents differ")
            clone = target
            clone.create_real_grid()
        if self.domain is Domain.FREQUENCY:
            clone.create_complex_grid()
        clone.set_access_mode(AccessMode.WRITE)
        self.set_access_mode(AccessMode.READ)
        try:
            for _ in range(self.nzp):
                clone._write_words(self._read_words(self.shape.slab_words))
        finally:
            self.end_access()
            clone.end_access()
        return clone

    # -- output ------------------------------------------------------------

    def write_storm_file(self, path: str, simbox, ascii: bool = False):
        from .io import write_storm_file

        write_storm_file(path, self, simbox, ascii=ascii)

    def write_segy_file(self, path: str, simbox):
        from .io import write_segy_file

        write_segy_file(path, self, simbox)

    def write_file(self, base_path: str, simbox, formats=("storm",)):
        """
        Write the grid in every requested format.

        Args:
            base_path: Output path without extension.
            simbox: Geometry of the grid.
            formats: Any of "storm", "storm_ascii", "segy", "npy".

        Returns:
            List of written paths.
        """
        from .io import save_grid

        written = []
        for fmt in formats:
            if fmt == "storm":
                path = base_path + ".storm"
                self.write_storm_file(path, simbox)
            elif fmt == "storm_ascii":
                path = base_path + ".txt"
                self.write_storm_file(path, simbox, ascii=True)
            elif fmt == "segy":
                path = base_path + ".segy"
                self.write_segy_file(path, simbox)
            elif fmt == "npy":
                path = base_path + ".npy"
                save_grid(self, path)
            else:
                raise ValueError(f"unknown output format {fmt!r}")
            written.append(path)
        return written


class FFTGrid(BaseGrid):
    """Memory-resident grid."""

    def __init__(self, shape: GridShape):
        super().__init__(shape)
        self._values = np.zeros(shape.rsize, dtype=np.float32)
        self._get_pos = 0
        self._set_pos = 0

    @classmethod
    def from_array(cls, array: np.ndarray, shape: Optional[GridShape] = None) -> "FFTGrid":
        """Memory grid holding an (nx, ny, nz) array, unpadded unless `shape` says otherwise."""
        arr = np.asarray(array)
        if arr.ndim != 3:
            raise ValueError("array must be 3D")
        if shape is None:
            shape = GridShape(*arr.shape, *arr.shape)
        grid = cls(shape)
        grid.fill_from_array(arr)
        return grid

    @property
    def raw_buffer(self) -> np.ndarray:
        return self._values

    def _reset(self, domain: Domain):
        self._values = np.zeros(self.shape.rsize, dtype=np.float32)

    def _open_session(self, mode: AccessMode):
        self._get_pos = 0
        self._set_pos = 0

    def _close_session(self, mode: AccessMode):
        pass

    def _read_words(self, n: int) -> np.ndarray:
        end = self._get_pos + n
        if end > self.shape.rsize:
            raise GridIOError("read past the end of the grid")
        words = self._values[self._get_pos:end].copy()
        self._get_pos = end
        return words

    def _write_words(self, words: np.ndarray):
        end = self._set_pos + words.size
        if end > self.shape.rsize:
            raise GridIOError("write past the end of the grid")
        self._values[self._set_pos:end] = words
        self._set_pos = end

    def _apply(self, op, modifies: bool = True):
        return op(self._values)

    def _live_values(self) -> np.ndarray:
        return self._values

    def _mark_modified(self):
        pass

    def _clone_empty(self) -> "FFTGrid":
        return FFTGrid(self.shape)
