import jax
import jax.numpy as jnp
import numpy as np
import pytest

from conftest import SR_SINGLE, random_sr
from mmnlse import ConfigurationError, Fiber
from mmnlse.nonlinear import SequentialEvaluator, VectorizedEvaluator, make_nonlinear_evaluator
from mmnlse.raman import SpontaneousRaman, raman_response
from mmnlse.tensors import calc_srsk
from mmnlse.utils import complex_normal


def _random_field(n_modes, n_points, seed=1, lead=()):
    return complex_normal(jax.random.PRNGKey(seed), lead + (n_modes, n_points)) * 30.0


@pytest.mark.parametrize("scalar, model", [(True, 0), (True, 1), (False, 1), (False, 2)])
def test_vectorized_matches_sequential(small_grid, scalar, model) -> None:
    sr = random_sr(3)
    raman = raman_response(model, small_grid.n_points, small_grid.dt, scalar=scalar)
    tensors = calc_srsk(sr, raman, scalar=scalar)
    fiber = Fiber(np.zeros((2, 3)), sr, 1.0)
    prefactor = fiber.get_nonlinear_prefactor(small_grid.omega_abs)
    n_modes = 3 if scalar else 6

    A_w = jnp.fft.fft(_random_field(n_modes, small_grid.n_points), axis=-1)
    vectorized = VectorizedEvaluator(tensors, raman, prefactor)(A_w)
    sequential = SequentialEvaluator(tensors, raman, prefactor)(A_w)
    assert vectorized.shape == (n_modes, small_grid.n_points)
    assert np.allclose(vectorized, sequential, rtol=1e-10, atol=1e-10 * float(jnp.max(jnp.abs(vectorized)))), \
        "Both evaluators must compute the same nonlinear term"


@pytest.mark.parametrize("strategy", ["vectorized", "sequential"])
def test_leading_plane_axis_is_independent(small_grid, strategy) -> None:
    sr = random_sr(2, seed=3)
    raman = raman_response(1, small_grid.n_points, small_grid.dt)
    tensors = calc_srsk(sr, raman)
    prefactor = Fiber(np.zeros((2, 2)), sr, 1.0).get_nonlinear_prefactor(small_grid.omega_abs)
    evaluator = make_nonlinear_evaluator(strategy, tensors, raman, prefactor)

    planes = jnp.fft.fft(_random_field(2, small_grid.n_points, lead=(4,)), axis=-1)
    batched = evaluator(planes)
    for k in range(4):
        assert np.allclose(batched[k], evaluator(planes[k]), rtol=1e-10, atol=1e-12 * float(jnp.max(jnp.abs(batched))))


def test_single_mode_kerr_is_spm(small_grid) -> None:
    raman = raman_response(0, small_grid.n_points, small_grid.dt)
    sr = np.full((1, 1, 1, 1), SR_SINGLE)
    tensors = calc_srsk(sr, raman)
    prefactor = Fiber(np.zeros((2, 1)), sr, 1.0).get_nonlinear_prefactor(small_grid.omega_abs)
    A_t = _random_field(1, small_grid.n_points)
    A_w = jnp.fft.fft(A_t, axis=-1)

    result = make_nonlinear_evaluator('vectorized', tensors, raman, prefactor)(A_w)
    expected = prefactor * jnp.fft.fft(SR_SINGLE * jnp.abs(A_t) ** 2 * A_t, axis=-1)
    assert np.allclose(result, expected)


def test_spontaneous_raman_term_is_added(small_grid) -> None:
    raman = raman_response(1, small_grid.n_points, small_grid.dt)
    sr = np.full((1, 1, 1, 1), SR_SINGLE)
    tensors = calc_srsk(sr, raman)
    prefactor = Fiber(np.zeros((2, 1)), sr, 1.0).get_nonlinear_prefactor(small_grid.omega_abs)
    sponrs = SpontaneousRaman(small_grid, raman, SR_SINGLE)
    gamma = sponrs.realize_for_step(jax.random.PRNGKey(0), 3)
    assert np.allclose(gamma, sponrs.realize_for_step(jax.random.PRNGKey(0), 3)), "Realizations are seeded"

    # weak field, so the Kerr part does not swamp the spontaneous term
    A_w = jnp.fft.fft(_random_field(1, small_grid.n_points) * 3e-6, axis=-1)
    vectorized = VectorizedEvaluator(tensors, raman, prefactor)
    sequential = SequentialEvaluator(tensors, raman, prefactor)
    difference = vectorized(A_w, gamma) - vectorized(A_w)
    expected = prefactor * jnp.fft.fft(gamma * jnp.fft.ifft(A_w, axis=-1), axis=-1)
    assert np.allclose(difference, expected, rtol=1e-8, atol=1e-8 * float(jnp.max(jnp.abs(expected))))
    assert np.allclose(vectorized(A_w, gamma), sequential(A_w, gamma))


def test_unknown_strategy(small_grid) -> None:
    raman = raman_response(0, small_grid.n_points, small_grid.dt)
    tensors = calc_srsk(np.full((1, 1, 1, 1), SR_SINGLE), raman)
    with pytest.raises(ConfigurationError):
        make_nonlinear_evaluator('gpu', tensors, raman, jnp.ones(small_grid.n_points))
