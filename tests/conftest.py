# -*- coding: utf-8 -*-
"""
Shared fixtures: a 36-sample (380-730 nm, 10 nm) grid with a second-order
finite-difference operator and smooth, strictly positive synthetic colour
matching functions normalised so that the perfect white has Y = 1.
"""

import numpy as np
import pytest

N_WAVELENGTHS = 36


def difference_operator(n: int) -> np.ndarray:
    """Tridiagonal smoothness operator: 4 on the diagonal, -2 off it, 2 at both ends."""
    d = 4.0 * np.eye(n) - 2.0 * np.eye(n, k=1) - 2.0 * np.eye(n, k=-1)
    d[0, 0] = 2.0
    d[-1, -1] = 2.0
    return d


def _gauss(wl: np.ndarray, mu: float, sigma: float) -> np.ndarray:
    return np.exp(-0.5 * ((wl - mu) / sigma) ** 2)


def synthetic_weighted_cmfs(n: int) -> np.ndarray:
    """Equal-energy illuminant times Gaussian approximations of the CIE 1931 CMFs."""
    wl = np.linspace(380.0, 730.0, n)
    cmfs = np.stack([
        1.056 * _gauss(wl, 599.8, 37.9) + 0.362 * _gauss(wl, 442.0, 16.0) - 0.065 * _gauss(wl, 501.1, 20.4),
        0.821 * _gauss(wl, 568.8, 46.9) + 0.286 * _gauss(wl, 530.9, 16.3),
        1.217 * _gauss(wl, 437.0, 11.8) + 0.681 * _gauss(wl, 459.0, 26.0),
    ], axis=1)
    cmfs = np.clip(cmfs, 1e-6, None)
    return cmfs / np.sum(cmfs[:, 1])


@pytest.fixture
def D() -> np.ndarray:
    return difference_operator(N_WAVELENGTHS)


@pytest.fixture
def Aw() -> np.ndarray:
    return synthetic_weighted_cmfs(N_WAVELENGTHS)


@pytest.fixture
def white(Aw: np.ndarray) -> np.ndarray:
    """XYZ of the perfect reflecting diffuser."""
    return Aw.sum(axis=0)


@pytest.fixture
def interior_reflectances() -> np.ndarray:
    """Smooth curves well inside (0, 1); their XYZ lie inside the object colour solid."""
    x = np.linspace(0.0, 1.0, N_WAVELENGTHS)
    return np.stack([
        0.5 + 0.25 * np.sin(np.pi * x),
        0.2 + 0.6 * x,
        0.8 - 0.5 * x,
        0.3 + 0.4 * np.exp(-0.5 * ((x - 0.55) / 0.15) ** 2),
        np.full(N_WAVELENGTHS, 0.35),
    ])


@pytest.fixture
def interior_targets(Aw: np.ndarray, interior_reflectances: np.ndarray) -> np.ndarray:
    return interior_reflectances @ Aw
