# -*- coding: utf-8 -*-
"""
Skein: Smoothest reflectance curves from tristimulus values
Copyright (c) 2026 opticsWolf

SPDX-License-Identifier: LGPL-3.0-or-later

Module: skein_reconstructor.py — Prepared-operator front end for LHTSS.

For a fixed illuminant / observer the operators ``D`` and ``Aw`` are
prepared once and then reused for many tristimulus targets.
``ReflectanceReconstructor`` validates and freezes them a single time, so
repeated calls only pay for the Newton iteration itself.

  * Operators are stored as read-only, C-contiguous float64 copies.
  * ``reconstruct_batch`` solves every row independently; failed rows are
    NaN in the stacked ``reflectances`` array, never zeros.
  * Instances carry no mutable state and may be shared between threads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np

from skein_solver import (
    ArrayFloat,
    FailureKind,
    ReflectanceResult,
    SolverConfig,
    _quiet_numerics,
    _run_newton,
    validate_operators,
    validate_target,
)

__all__ = [
    "BatchReconstruction",
    "ReflectanceReconstructor",
]

logger = logging.getLogger(__name__)


# =============================================================================
# 1.  BatchReconstruction
# =============================================================================
@dataclass(slots=True, frozen=True, eq=False)
class BatchReconstruction:
    """Per-row outcomes of ``ReflectanceReconstructor.reconstruct_batch``."""
    results:       Tuple[ReflectanceResult, ...]
    n_wavelengths: int

    def __len__(self) -> int:
        return len(self.results)

    @property
    def converged(self) -> np.ndarray:
        """Boolean mask (m,), True where a reflectance curve was produced."""
        return np.fromiter((r.converged for r in self.results), dtype=bool, count=len(self.results))

    @property
    def reflectances(self) -> ArrayFloat:
        """Stacked curves (m, n); rows of failed targets are NaN."""
        out = np.full((len(self.results), self.n_wavelengths), np.nan)
        for i, res in enumerate(self.results):
            if res.reflectance is not None:
                out[i] = res.reflectance
        return out

    @property
    def failures(self) -> Dict[int, FailureKind]:
        """Row index → failure kind, for failed rows only."""
        return {
            i: res.failure for i, res in enumerate(self.results) if res.failure is not None
        }


# =============================================================================
# 2.  ReflectanceReconstructor
# =============================================================================
class ReflectanceReconstructor:
    """
    LHTSS solver bound to one smoothness operator and one set of
    illuminant-referenced colour matching functions.

    Example
    -------
    >>> rec = ReflectanceReconstructor(D, Aw)
    >>> result = rec.reconstruct([0.3, 0.25, 0.2])
    >>> rho = result.unwrap()
    """

    __slots__ = ("_D", "_Aw", "_config")

    def __init__(
        self,
        D: ArrayFloat,
        Aw: ArrayFloat,
        config: Optional[SolverConfig] = None,
    ) -> None:
        d_arr, a_arr = validate_operators(D, Aw)
        d_arr.setflags(write=False)
        a_arr.setflags(write=False)
        self._D = d_arr
        self._Aw = a_arr
        self._config = config if config is not None else SolverConfig()

    def __repr__(self) -> str:
        cfg = self._config
        return (
            f"ReflectanceReconstructor(n_wavelengths={self.n_wavelengths}, "
            f"max_iterations={cfg.max_iterations}, tolerance={cfg.tolerance:.1e}, "
            f"rcond_threshold={cfg.rcond_threshold:.1e})"
        )

    # -- read interface ----------------------------------------------------
    @property
    def n_wavelengths(self) -> int:
        return self._Aw.shape[0]

    @property
    def config(self) -> SolverConfig:
        return self._config

    @property
    def D(self) -> ArrayFloat:
        """The smoothness operator (read-only view)."""
        return self._D

    @property
    def Aw(self) -> ArrayFloat:
        """The weighted colour matching functions (read-only view)."""
        return self._Aw

    # -- colorimetry -------------------------------------------------------
    def tristimulus(self, reflectance: ArrayFloat) -> ArrayFloat:
        """
        Integrate reflectance curve(s) against ``Aw``.

        Args:
            reflectance: Shape (n,) or (m, n).

        Returns:
            XYZ of shape (3,) or (m, 3).
        """
        rho = np.ascontiguousarray(reflectance, dtype=np.float64)
        if rho.ndim not in (1, 2) or rho.shape[-1] != self.n_wavelengths:
            raise ValueError(
                f"Reflectance dimension mismatch. Expected last dim {self.n_wavelengths}, "
                f"got shape {rho.shape}"
            )
        # (N,) . (N, 3) -> (3,), (M, N) . (N, 3) -> (M, 3)
        return np.dot(rho, self._Aw)

    # -- reconstruction ----------------------------------------------------
    def reconstruct(self, xyz: ArrayFloat) -> ReflectanceResult:
        """Smoothest reflectance curve for one target; see ``solve_reflectance``."""
        target = validate_target(xyz)
        with _quiet_numerics():
            return _run_newton(self._D, self._Aw, target, self._config)

    def reconstruct_batch(self, xyz_array: ArrayFloat) -> BatchReconstruction:
        """
        Reconstruct every row of an (m, 3) array of targets.

        Rows are independent: a failing row does not affect the others.
        """
        targets = np.atleast_2d(np.asarray(xyz_array, dtype=np.float64))
        if targets.ndim != 2 or targets.shape[-1] != 3:
            raise ValueError(f"Expected targets of shape (M, 3), got {targets.shape}")
        checked = [validate_target(row) for row in targets]

        with _quiet_numerics():
            results = tuple(
                _run_newton(self._D, self._Aw, row, self._config) for row in checked
            )

        batch = BatchReconstruction(results=results, n_wavelengths=self.n_wavelengths)
        n_ok = int(np.count_nonzero(batch.converged))
        logger.info(
            "LHTSS batch: %d/%d targets converged, %d failed",
            n_ok, len(batch), len(batch) - n_ok,
        )
        return batch
