"""
Exception types raised by the grid layer and the inversion engine.
"""


class AccessModeError(RuntimeError):
    """Grid used outside the access mode or domain that permits the call."""


class PhaseError(RuntimeError):
    """Inversion phase invoked out of order."""


class NumericalError(ArithmeticError):
    """Singular or invalid prior, noise or operator."""


class GridIOError(OSError):
    """Temporary grid file could not be read or written."""
