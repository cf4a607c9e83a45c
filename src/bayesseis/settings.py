"""
Run configuration for the inversion engine.
"""

import json
from dataclasses import dataclass, fields
from typing import Optional


@dataclass(frozen=True)
class InversionSettings:
    """
    Settings for one inversion run.

    Attributes:
        n_simulations: Number of posterior realizations to draw.
        seed: Seed for the default random generator (None for entropy).
        n_threads: Workers used for the per-frequency update.
        use_file_grids: Back every grid by temporary files.
        max_memory_bytes: Footprint above which grids go to disk.
        work_dir: Directory for temporary grid files.
        differentiate_wavelet: Convolve wavelets with a first difference so
            that seismic responds to contrasts of the log parameters.
        compute_post_covariance: Materialize posterior covariance grids.
        compute_facies_probabilities: Score facies after the inversion.
        compute_synthetic_seismic: Forward model the posterior mean.
        exp_output: Return posterior grids in natural units.
        vs_vp_ratio: Vs/Vp used in the reflection coefficients; derived
            from the background when None.
        energy_tolerance: Relative mismatch between observed and modelled
            seismic energy that produces a warning.
        min_pad_fraction: Minimum relative padding per axis.
    """

    n_simulations: int = 0
    seed: Optional[int] = None
    n_threads: int = 1
    use_file_grids: bool = False
    max_memory_bytes: Optional[int] = None
    work_dir: Optional[str] = None
    differentiate_wavelet: bool = True
    compute_post_covariance: bool = False
    compute_facies_probabilities: bool = False
    compute_synthetic_seismic: bool = False
    exp_output: bool = True
    vs_vp_ratio: Optional[float] = None
    energy_tolerance: float = 0.5
    min_pad_fraction: float = 0.0

    def __post_init__(self):
        if self.n_simulations < 0:
            raise ValueError("n_simulations must be non-negative")
        if self.n_threads < 1:
            raise ValueError("n_threads must be at least 1")
        if self.vs_vp_ratio is not None and not (0.0 < self.vs_vp_ratio < 1.0):
            raise ValueError("vs_vp_ratio must be in (0, 1)")
        if self.energy_tolerance <= 0.0:
            raise ValueError("energy_tolerance must be positive")
        if self.min_pad_fraction < 0.0:
            raise ValueError("min_pad_fraction must be non-negative")


def load_settings(json_path: str) -> InversionSettings:
    """
    Load settings from a JSON object. Missing keys keep their defaults.
    """
    with open(json_path) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("settings file must contain a JSON object")
    known = {f.name for f in fields(InversionSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"unknown settings: {', '.join(unknown)}")
    return InversionSettings(**data)
