"""
Simulation box geometry.

Provides the Simbox dataclass that sizes every grid of an inversion run.
"""

import numpy as np
from dataclasses import dataclass
from typing import Optional, Tuple

from .context import GridContext
from .fftgrid import BaseGrid, GridShape
from .filegrid import create_grid


@dataclass
class Simbox:
    """
    Regular 3D box the grids are defined over.

    Attributes:
        origin: (x0, y0, z0) of the first cell corner.
        spacing: (dx, dy, dz) cell sizes; dz is the sample interval.
        dims: (nx, ny, nz) number of cells in each direction.
        rotation: Rotation of the x axis from east, radians.
    """
    origin: Tuple[float, float, float]
    spacing: Tuple[float, float, float]
    dims: Tuple[int, int, int]
    rotation: float = 0.0

    def __post_init__(self):
        if len(self.dims) != 3 or min(self.dims) < 1:
            raise ValueError("dims must be three positive integers")
        if len(self.spacing) != 3 or min(self.spacing) <= 0.0:
            raise ValueError("spacing must be three positive values")
        self.dims = tuple(int(n) for n in self.dims)

    @property
    def n_cells(self) -> int:
        return int(np.prod(self.dims))

    @property
    def extent(self) -> Tuple[float, float, float]:
        """(lx, ly, lz) side lengths."""
        return tuple(n * d for n, d in zip(self.dims, self.spacing))

    def padded_dims(self, min_pad_fraction: float = 0.0) -> Tuple[int, int, int]:
        shape = self.grid_shape(min_pad_fraction)
        return (shape.nxp, shape.nyp, shape.nzp)

    def grid_shape(self, min_pad_fraction: float = 0.0) -> GridShape:
        return GridShape.padded(*self.dims, min_pad_fraction=min_pad_fraction)

    def create_grid(
        self,
        context: Optional[GridContext] = None,
        shape: Optional[GridShape] = None,
        n_live_grids: int = 1,
    ) -> BaseGrid:
        """New zero grid over this box, memory or disk backed per `context`."""
        if shape is None:
            shape = self.grid_shape()
        if (shape.nx, shape.ny, shape.nz) != self.dims:
            raise ValueError("grid shape does not match simbox dims")
        return create_grid(shape, context, n_live_grids)

    def cell_centers(self) -> np.ndarray:
        """
        Compute centers of all cells.

        Returns:
            Array of shape (nx, ny, nz, 3) with (x, y, z) coordinates.
        """
        x0, y0, z0 = self.origin
        dx, dy, dz = self.spacing
        nx, ny, nz = self.dims

        u = (np.arange(nx) + 0.5) * dx
        v = (np.arange(ny) + 0.5) * dy
        z = z0 + (np.arange(nz) + 0.5) * dz

        U, V, Z = np.meshgrid(u, v, z, indexing='ij')
        cos_r, sin_r = np.cos(self.rotation), np.sin(self.rotation)
        X = x0 + U * cos_r - V * sin_r
        Y = y0 + U * sin_r + V * cos_r
        return np.stack([X, Y, Z], axis=-1)

    def storm_header(self, ascii: bool = False) -> str:
        """Header block of a Storm petro cube over this box."""
        x0, y0, z0 = self.origin
        lx, ly, lz = self.extent
        nx, ny, nz = self.dims
        kind = "storm_petro_ascii" if ascii else "storm_petro_binary"
        return (
            f"{kind}\n"
            f"0 0 -999.0\n"
            f"NO_LABEL\n"
            f"{x0:.6f} {lx:.6f} {y0:.6f} {ly:.6f} {z0:.6f} {z0 + lz:.6f} 0.0 0.0\n"
            f"{lx:.6f} {ly:.6f} {np.degrees(self.rotation):.6f}\n"
            f"{nx} {ny} {nz}\n"
        )
