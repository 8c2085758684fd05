# -*- coding: utf-8 -*-
"""
Skein: Smoothest reflectance curves from tristimulus values
Copyright (c) 2026 opticsWolf

SPDX-License-Identifier: LGPL-3.0-or-later

Module: skein_solver.py — LHTSS reflectance reconstruction core.

Least Hyperbolic Tangent Slope Squared (LHTSS)
==============================================
Given a finite-difference operator ``D`` (n, n), illuminant-referenced
colour matching functions ``Aw`` (n, 3) and a target ``XYZw`` (3,), find
the smoothest reflectance curve ``rho`` with ``Aw.T @ rho == XYZw``.

The bound ``0 < rho < 1`` is encoded by the substitution

    rho = (tanh(z) + 1) / 2

which turns the box-constrained variational problem into an unconstrained
root-finding problem in the latent vector ``z`` (n,) and the Lagrange
multipliers ``lam`` (3,).  Newton's method is applied to

    F(z, lam) = [ D z + d1 Aw lam    ]   (stationarity, n rows)
                [ Aw.T rho - XYZw    ]   (colorimetric constraint, 3 rows)

with d1 = diag(sech(z)**2 / 2) and the bordered Jacobian

    J = [ D - diag(d2 Aw lam)   d1 Aw ]     d2 = diag(sech(z)**2 tanh(z))
        [ (d1 Aw).T             0     ]

Conditioning policy:
    The per-iteration system is LU-factorised (LAPACK getrf via SciPy).
    An exactly zero pivot, or a 1-norm reciprocal condition estimate
    (LAPACK gecon) below ``SolverConfig.rcond_threshold``, is reported as
    ``FailureKind.SINGULAR_SYSTEM``.  The default threshold is float64
    machine epsilon, the same level at which LAPACK-backed solvers flag a
    matrix as numerically singular.

Failures are returned as tagged ``ReflectanceResult`` objects, never as a
zero-filled vector: an all-zero curve is a legitimate black reflectance.

References:
    [1] Burns, S.A., "Numerical methods for smoothest reflectance
        reconstruction", Color Res. Appl. 45(1), 8-21 (2020).
    [2] Burns, S.A., "Generating Reflectance Curves from sRGB Triplets"
        (2015), method LHTSS.
"""

from __future__ import annotations

import enum
import logging
import warnings
from contextlib import contextmanager
from dataclasses import dataclass, fields
from typing import Any, Final, Iterator, Mapping, NamedTuple, Optional, Tuple, TypeAlias

import numpy as np
from numba import njit
from numpy.typing import NDArray
from scipy.linalg import LinAlgWarning, get_lapack_funcs, lu_factor, lu_solve

__all__ = [
    # --- Type Aliases ---
    "ArrayFloat",

    # --- Constants ---
    "DEFAULT_MAX_ITERATIONS",
    "DEFAULT_TOLERANCE",
    "DEFAULT_RCOND_THRESHOLD",
    "OBJECT_COLOR_SOLID_HINT",

    # --- Configuration ---
    "SolverConfig",

    # --- Results & Errors ---
    "FailureKind",
    "ReflectanceResult",
    "ReflectanceError",
    "SingularSystemError",
    "MaxIterationsExceededError",

    # --- Functions ---
    "validate_operators",
    "validate_target",
    "latent_to_reflectance",
    "solve_reflectance",
]

logger = logging.getLogger(__name__)

# --- Type Aliases ---
ArrayFloat: TypeAlias = NDArray[np.floating]

# --- Constants ---
DEFAULT_MAX_ITERATIONS: Final[int] = 20
DEFAULT_TOLERANCE: Final[float] = 1.0e-8
DEFAULT_RCOND_THRESHOLD: Final[float] = float(np.finfo(np.float64).eps)

OBJECT_COLOR_SOLID_HINT: Final[str] = (
    "Check to make sure XYZw is within the object color solid."
)


# =============================================================================
# 1. CONFIGURATION
# =============================================================================

@dataclass(slots=True, frozen=True)
class SolverConfig:
    """
    Iteration budget and numerical thresholds for the Newton solver.

    Attributes:
        max_iterations: Loop guard.  The loop runs while the step counter is
            ``<= max_iterations``, i.e. at most ``max_iterations + 1``
            Newton steps.
        tolerance: Convergence is declared when every component of the
            residual F is below this value in magnitude.  The test is
            absolute, so a boundary target such as exact black can be
            accepted when a curve within ``tolerance`` of zero reproduces
            it (e.g. ``D = 0``, ``Aw = I``, ``XYZw = 0``).
        rcond_threshold: Reciprocal condition estimates of the Jacobian
            below this value are treated as a singular system.
    """
    max_iterations:  int   = DEFAULT_MAX_ITERATIONS
    tolerance:       float = DEFAULT_TOLERANCE
    rcond_threshold: float = DEFAULT_RCOND_THRESHOLD

    def __post_init__(self) -> None:
        if isinstance(self.max_iterations, bool) or not isinstance(self.max_iterations, (int, np.integer)):
            raise TypeError(f"max_iterations must be an int, got {type(self.max_iterations).__name__}")
        if self.max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got {self.max_iterations}")
        if not np.isfinite(self.tolerance) or self.tolerance <= 0.0:
            raise ValueError(f"tolerance must be a finite value > 0, got {self.tolerance}")
        if not 0.0 <= self.rcond_threshold < 1.0:
            raise ValueError(f"rcond_threshold must be in [0, 1), got {self.rcond_threshold}")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> SolverConfig:
        """
        Build a config from a plain mapping (e.g. a parsed config file).

        Raises:
            ValueError: If *mapping* contains keys that are not config fields.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ValueError(
                f"Unknown SolverConfig keys: {unknown}. Expected a subset of {sorted(known)}"
            )
        return cls(**dict(mapping))


# =============================================================================
# 2. RESULTS & ERRORS
# =============================================================================

class FailureKind(enum.Enum):
    """Why a reconstruction did not produce a reflectance curve."""
    SINGULAR_SYSTEM = "singular_system"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"


class ReflectanceError(RuntimeError):
    """Base class for numerical reconstruction failures."""

    def __init__(self, message: str, *, kind: FailureKind, iterations: int) -> None:
        super().__init__(message)
        self.kind = kind
        self.iterations = iterations


class SingularSystemError(ReflectanceError):
    """The Newton system could not be solved (singular, ill-conditioned or non-finite)."""


class MaxIterationsExceededError(ReflectanceError):
    """The iteration budget was exhausted before the residual met the tolerance."""


_ERROR_TYPES: Final[dict[FailureKind, type[ReflectanceError]]] = {
    FailureKind.SINGULAR_SYSTEM: SingularSystemError,
    FailureKind.MAX_ITERATIONS_EXCEEDED: MaxIterationsExceededError,
}


@dataclass(slots=True, frozen=True, eq=False)
class ReflectanceResult:
    """
    Outcome of one reconstruction.

    Exactly one of ``reflectance`` / ``failure`` is set.  ``residual`` is the
    largest absolute component of the last assembled residual F (NaN if the
    residual itself was non-finite).
    """
    reflectance: Optional[ArrayFloat]
    failure:     Optional[FailureKind]
    iterations:  int
    residual:    float
    message:     str = ""

    def __post_init__(self) -> None:
        if (self.reflectance is None) == (self.failure is None):
            raise ValueError("ReflectanceResult needs exactly one of reflectance or failure.")

    @property
    def converged(self) -> bool:
        return self.failure is None

    def unwrap(self) -> ArrayFloat:
        """Return the reflectance curve or raise the matching ``ReflectanceError``."""
        if self.failure is None:
            return self.reflectance  # type: ignore[return-value]
        raise _ERROR_TYPES[self.failure](
            self.message, kind=self.failure, iterations=self.iterations
        )


# =============================================================================
# 3. INPUT VALIDATION
# =============================================================================

def validate_operators(D: ArrayFloat, Aw: ArrayFloat) -> Tuple[ArrayFloat, ArrayFloat]:
    """
    Check shapes and finiteness of the smoothness operator and weighted CMFs.

    Returns:
        Contiguous float64 copies ``(D, Aw)``; the caller's arrays are never
        touched.

    Raises:
        ValueError: On any shape mismatch or non-finite entry.
    """
    d_arr = np.array(D, dtype=np.float64, order="C", copy=True)
    a_arr = np.array(Aw, dtype=np.float64, order="C", copy=True)

    if a_arr.ndim != 2 or a_arr.shape[1] != 3:
        raise ValueError(f"Aw must be shape (N, 3), got {a_arr.shape}.")
    n = a_arr.shape[0]
    if n < 1:
        raise ValueError("Aw must contain at least one wavelength sample.")
    if d_arr.ndim != 2 or d_arr.shape[0] != d_arr.shape[1]:
        raise ValueError(f"D must be a square matrix, got shape {d_arr.shape}.")
    if d_arr.shape[0] != n:
        raise ValueError(
            f"D dimension mismatch. Expected ({n}, {n}) to match Aw, got {d_arr.shape}."
        )
    if not np.all(np.isfinite(d_arr)):
        raise ValueError("D contains non-finite values.")
    if not np.all(np.isfinite(a_arr)):
        raise ValueError("Aw contains non-finite values.")
    return d_arr, a_arr


def validate_target(XYZw: ArrayFloat) -> ArrayFloat:
    """Return *XYZw* as a finite float64 vector of length 3 or raise ``ValueError``."""
    xyz = np.array(XYZw, dtype=np.float64, copy=True).reshape(-1)
    if xyz.shape[0] != 3:
        raise ValueError(f"XYZw must have exactly 3 components, got {xyz.shape[0]}.")
    if not np.all(np.isfinite(xyz)):
        raise ValueError(f"XYZw contains non-finite values: {xyz}.")
    return xyz


# =============================================================================
# 4. NUMERICAL KERNELS
# =============================================================================
# Strict IEEE (no fastmath): NaN / inf must propagate into F and J so the
# caller can detect a blown-up iterate.

@njit(cache=True)
def latent_to_reflectance(z: ArrayFloat) -> ArrayFloat:
    """Map the unconstrained latent vector to reflectance in (0, 1)."""
    return (np.tanh(z) + 1.0) / 2.0


@njit(cache=True)
def _assemble_newton_system(
    D: ArrayFloat,
    Aw: ArrayFloat,
    xyz: ArrayFloat,
    z: ArrayFloat,
    lam: ArrayFloat,
) -> Tuple[ArrayFloat, ArrayFloat]:
    """
    Build the residual F (n+3,) and Jacobian J (n+3, n+3) at (z, lam).

    Single pass over the wavelength samples; the diagonal matrices d1, d2
    are never materialised.
    """
    n = z.shape[0]
    F = np.empty(n + 3)
    J = np.zeros((n + 3, n + 3))
    constraint = np.zeros(3)

    for i in range(n):
        t = np.tanh(z[i])
        c = np.cosh(z[i])
        sech2 = 1.0 / (c * c)
        half = 0.5 * sech2

        # (Aw lam)_i and the bordered d1 Aw blocks
        aw_lam = 0.0
        for k in range(3):
            d1a_ik = half * Aw[i, k]
            J[i, n + k] = d1a_ik
            J[n + k, i] = d1a_ik
            aw_lam += Aw[i, k] * lam[k]

        stationarity = half * aw_lam
        for j in range(n):
            stationarity += D[i, j] * z[j]
            J[i, j] = D[i, j]
        F[i] = stationarity
        J[i, i] -= sech2 * t * aw_lam

        r_i = 0.5 * (t + 1.0)
        for k in range(3):
            constraint[k] += Aw[i, k] * r_i

    for k in range(3):
        F[n + k] = constraint[k] - xyz[k]

    return F, J


class _LinearStep(NamedTuple):
    """Outcome of one guarded linear solve; ``delta`` is None on failure."""
    delta:  Optional[ArrayFloat]
    rcond:  float
    reason: str


def _solve_linear_step(J: ArrayFloat, F: ArrayFloat, rcond_threshold: float) -> _LinearStep:
    """Solve ``J @ delta = -F`` with explicit singularity and conditioning checks."""
    lu, piv = lu_factor(J, check_finite=False)

    if np.any(np.diag(lu) == 0.0):
        return _LinearStep(None, 0.0, "exactly singular Jacobian (zero pivot)")

    gecon, = get_lapack_funcs(("gecon",), (lu,))
    rcond, info = gecon(lu, np.linalg.norm(J, 1), norm="1")
    rcond = float(rcond)
    if info != 0 or not rcond >= rcond_threshold:
        return _LinearStep(
            None, rcond, f"ill-conditioned Jacobian (rcond={rcond:.3e} < {rcond_threshold:.3e})"
        )

    delta = lu_solve((lu, piv), -F, check_finite=False)
    if not np.all(np.isfinite(delta)):
        return _LinearStep(None, rcond, "non-finite Newton step")
    return _LinearStep(delta, rcond, "")


@contextmanager
def _quiet_numerics() -> Iterator[None]:
    """Mute non-fatal floating point and LAPACK warnings for the enclosed block only."""
    with warnings.catch_warnings(), np.errstate(all="ignore"):
        warnings.simplefilter("ignore", LinAlgWarning)
        warnings.simplefilter("ignore", RuntimeWarning)
        yield


# =============================================================================
# 5. SOLVER
# =============================================================================

def _failure(kind: FailureKind, detail: str, iterations: int, residual: float) -> ReflectanceResult:
    message = f"{detail} {OBJECT_COLOR_SOLID_HINT}"
    logger.warning("LHTSS failed (%s) after %d iteration(s): %s", kind.value, iterations, message)
    return ReflectanceResult(
        reflectance=None,
        failure=kind,
        iterations=iterations,
        residual=residual,
        message=message,
    )


def _max_abs(F: ArrayFloat) -> float:
    return float(np.max(np.abs(F))) if np.all(np.isfinite(F)) else float("nan")


def _run_newton(
    D: ArrayFloat,
    Aw: ArrayFloat,
    xyz: ArrayFloat,
    config: SolverConfig,
) -> ReflectanceResult:
    """Newton loop on validated, contiguous float64 operands."""
    n = Aw.shape[0]
    z = np.zeros(n)
    lam = np.zeros(3)
    residual = float("nan")

    count = 0
    while count <= config.max_iterations:
        F, J = _assemble_newton_system(D, Aw, xyz, z, lam)
        residual = _max_abs(F)
        # Only reachable through an iterate that overflowed on the previous
        # step; finite inputs and the rcond guard catch everything else.
        if not (np.all(np.isfinite(F)) and np.all(np.isfinite(J))):
            return _failure(
                FailureKind.SINGULAR_SYSTEM,
                f"Non-finite values in the Newton system at iteration {count + 1}.",
                count, residual,
            )

        step = _solve_linear_step(J, F, config.rcond_threshold)
        if step.delta is None:
            return _failure(
                FailureKind.SINGULAR_SYSTEM,
                f"Ill-conditioned or singular linear system detected: {step.reason}.",
                count, residual,
            )

        z = z + step.delta[:n]
        lam = lam + step.delta[n:]
        count += 1
        logger.debug(
            "LHTSS iteration %d: max|F|=%.3e, |delta|=%.3e, rcond=%.3e",
            count, residual, float(np.linalg.norm(step.delta)), step.rcond,
        )

        # z + delta can overflow even when delta itself is finite.
        if not (np.all(np.isfinite(z)) and np.all(np.isfinite(lam))):
            return _failure(
                FailureKind.SINGULAR_SYSTEM,
                f"Non-finite iterate after iteration {count}.",
                count, residual,
            )

        # Check-then-update: F belongs to the iterate *before* this step.
        if residual < config.tolerance:
            logger.debug("LHTSS converged after %d iteration(s), max|F|=%.3e", count, residual)
            return ReflectanceResult(
                reflectance=latent_to_reflectance(z),
                failure=None,
                iterations=count,
                residual=residual,
            )

    return _failure(
        FailureKind.MAX_ITERATIONS_EXCEEDED,
        f"Maximum number of iterations reached ({count} steps, max|F|={residual:.3e}).",
        count, residual,
    )


def _resolve_config(
    config: Optional[SolverConfig],
    max_iterations: int,
    tolerance: float,
) -> SolverConfig:
    if config is None:
        return SolverConfig(max_iterations=max_iterations, tolerance=tolerance)
    # Keywords left at their defaults defer to the explicit config.
    if max_iterations != DEFAULT_MAX_ITERATIONS or tolerance != DEFAULT_TOLERANCE:
        raise ValueError("Pass either config or max_iterations/tolerance, not both.")
    return config


def solve_reflectance(
    D: ArrayFloat,
    Aw: ArrayFloat,
    XYZw: ArrayFloat,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    tolerance: float = DEFAULT_TOLERANCE,
    *,
    config: Optional[SolverConfig] = None,
) -> ReflectanceResult:
    """
    Reconstruct the smoothest reflectance curve matching *XYZw* (LHTSS).

    Args:
        D: Finite-difference smoothness operator, shape (n, n).
        Aw: Illuminant-referenced colour matching functions, shape (n, 3).
        XYZw: Target tristimulus values (illuminant-referenced, Y in 0..1
            for the usual normalisation), shape (3,).
        max_iterations: Iteration guard, default 20.
        tolerance: Residual tolerance, default 1e-8.
        config: Full ``SolverConfig``; mutually exclusive with non-default
            values of the two keywords above.

    Returns:
        ``ReflectanceResult``.  On success ``reflectance`` is an (n,) array
        strictly inside (0, 1); on failure ``reflectance`` is None and
        ``failure`` names the ``FailureKind``.

    Raises:
        ValueError: On malformed inputs or configuration.  Numerical
            failures are *returned*, not raised; use ``result.unwrap()``
            for exception-style handling.
    """
    cfg = _resolve_config(config, max_iterations, tolerance)
    d_arr, a_arr = validate_operators(D, Aw)
    xyz = validate_target(XYZw)

    with _quiet_numerics():
        return _run_newton(d_arr, a_arr, xyz, cfg)


# =============================================================================
# Validation Block
# =============================================================================
if __name__ == "__main__":
    print("--- Skein LHTSS Solver Validation ---")

    # 1. Neutral point: D = 0, Aw = I, XYZ = 0.5
    print("1. Testing neutral grey fixed point...")
    res = solve_reflectance(np.zeros((3, 3)), np.eye(3), np.array([0.5, 0.5, 0.5]))
    print(f"   rho = {res.reflectance}, iterations = {res.iterations} "
          f"{'[PASS]' if res.converged and res.iterations == 1 else '[FAIL]'}")

    # 2. Smooth interior target on a synthetic 36-sample grid
    print("2. Testing interior target...")
    n_wl = 36
    wl = np.linspace(380.0, 730.0, n_wl)
    cmfs = np.stack([
        1.06 * np.exp(-0.5 * ((wl - 599.8) / 37.9) ** 2) + 0.36 * np.exp(-0.5 * ((wl - 442.0) / 16.0) ** 2),
        1.00 * np.exp(-0.5 * ((wl - 556.3) / 46.1) ** 2),
        1.78 * np.exp(-0.5 * ((wl - 449.8) / 22.3) ** 2),
    ], axis=1)
    aw = cmfs / np.sum(cmfs[:, 1])
    d_op = 4.0 * np.eye(n_wl) - 2.0 * np.eye(n_wl, k=1) - 2.0 * np.eye(n_wl, k=-1)
    d_op[0, 0] = d_op[-1, -1] = 2.0
    rho_true = 0.5 + 0.25 * np.sin(np.linspace(0.0, np.pi, n_wl))
    xyz_target = aw.T @ rho_true
    res = solve_reflectance(d_op, aw, xyz_target)
    if res.converged:
        err = np.max(np.abs(aw.T @ res.reflectance - xyz_target))
        print(f"   iterations = {res.iterations}, max XYZ error = {err:.2e} "
              f"{'[PASS]' if err < 1e-8 else '[FAIL]'}")
    else:
        print(f"   [FAIL] {res.message}")

    # 3. Out-of-gamut target
    print("3. Testing out-of-gamut rejection...")
    res = solve_reflectance(d_op, aw, 1.5 * aw.sum(axis=0))
    print(f"   failure = {res.failure} {'[PASS]' if not res.converged else '[FAIL]'}")
