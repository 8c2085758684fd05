# -*- coding: utf-8 -*-
"""Tests for the prepared-operator front end in skein_reconstructor."""

import logging

import numpy as np
import pytest

from skein_reconstructor import BatchReconstruction, ReflectanceReconstructor
from skein_solver import FailureKind, SolverConfig, solve_reflectance


@pytest.fixture
def reconstructor(D, Aw):
    return ReflectanceReconstructor(D, Aw)


def test_reconstruct_matches_functional_interface(reconstructor, D, Aw, interior_targets):
    for xyz in interior_targets:
        via_class = reconstructor.reconstruct(xyz)
        via_function = solve_reflectance(D, Aw, xyz)

        assert via_class.converged
        assert via_class.iterations == via_function.iterations
        assert np.array_equal(via_class.reflectance, via_function.reflectance)


def test_operators_are_frozen_copies(D, Aw):
    rec = ReflectanceReconstructor(D, Aw)
    D[0, 0] = 99.0

    assert rec.D[0, 0] == 2.0
    with pytest.raises(ValueError):
        rec.Aw[0, 0] = 1.0


def test_constructor_validates_shapes(D, Aw):
    with pytest.raises(ValueError):
        ReflectanceReconstructor(D, Aw[:, :2])
    with pytest.raises(ValueError):
        ReflectanceReconstructor(D[:-1, :-1], Aw)


def test_tristimulus_single_and_batch(reconstructor, Aw, interior_reflectances):
    single = reconstructor.tristimulus(interior_reflectances[0])
    batch = reconstructor.tristimulus(interior_reflectances)

    assert single.shape == (3,)
    assert batch.shape == (len(interior_reflectances), 3)
    np.testing.assert_allclose(batch, interior_reflectances @ Aw)


def test_tristimulus_rejects_wrong_length(reconstructor):
    with pytest.raises(ValueError, match="dimension mismatch"):
        reconstructor.tristimulus(np.full(10, 0.5))


def test_reconstructed_curve_reproduces_target(reconstructor, interior_targets):
    xyz = interior_targets[3]
    rho = reconstructor.reconstruct(xyz).unwrap()

    np.testing.assert_allclose(reconstructor.tristimulus(rho), xyz, atol=1e-8)


def test_batch_mixes_successes_and_failures(reconstructor, interior_targets, white, caplog):
    targets = np.vstack([interior_targets[:2], 1.5 * white, interior_targets[2]])

    with caplog.at_level(logging.INFO, logger="skein_reconstructor"):
        batch = reconstructor.reconstruct_batch(targets)

    assert isinstance(batch, BatchReconstruction)
    assert len(batch) == 4
    assert batch.converged.tolist() == [True, True, False, True]
    assert list(batch.failures) == [2]
    assert batch.failures[2] in (FailureKind.SINGULAR_SYSTEM, FailureKind.MAX_ITERATIONS_EXCEEDED)

    rhos = batch.reflectances
    assert rhos.shape == (4, reconstructor.n_wavelengths)
    assert np.all(np.isnan(rhos[2]))
    assert np.all(np.isfinite(rhos[[0, 1, 3]]))
    assert any("3/4 targets converged" in rec.getMessage() for rec in caplog.records)


def test_batch_accepts_single_row(reconstructor, interior_targets):
    batch = reconstructor.reconstruct_batch(interior_targets[0])

    assert len(batch) == 1
    assert batch.converged.tolist() == [True]


def test_batch_rejects_bad_shape(reconstructor):
    with pytest.raises(ValueError, match=r"\(M, 3\)"):
        reconstructor.reconstruct_batch(np.zeros((4, 2)))


def test_config_is_applied(D, Aw, interior_targets):
    rec = ReflectanceReconstructor(D, Aw, config=SolverConfig(max_iterations=0))
    result = rec.reconstruct(interior_targets[0])

    assert rec.config.max_iterations == 0
    assert result.failure is FailureKind.MAX_ITERATIONS_EXCEEDED


def test_repr(reconstructor):
    text = repr(reconstructor)
    assert "n_wavelengths=36" in text
    assert "max_iterations=20" in text
