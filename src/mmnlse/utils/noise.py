"""Quantum noise utilities: one photon per frequency bin."""

import jax
import jax.numpy as jnp

from ..constants import H_PLANCK, PS_TO_S, THZ_TO_HZ


def photon_noise_amplitude(sim_params) -> jnp.ndarray:
    """Spectral amplitude carrying one photon per frequency bin.

    With ``A_w = fft(A_t)`` and pulse energy ``sum(|A_t|^2) * dt``, a bin of
    amplitude ``a`` holds ``|a|^2 * dt / N`` of energy. Setting that equal to
    ``h * nu`` gives ``a = sqrt(h * nu * N / dt)``.

    Args:
        sim_params: SimParams providing the frequency grid.

    Returns:
        Real amplitude per bin in FFT ordering, shape (n_points,). Bins with
        non-positive absolute frequency carry no noise.
    """
    freq_hz = sim_params.freqs_abs_thz * THZ_TO_HZ
    dt_s = sim_params.dt * PS_TO_S
    return jnp.where(
        freq_hz > 0.0,
        jnp.sqrt(H_PLANCK * jnp.abs(freq_hz) * sim_params.n_points / dt_s),
        0.0,
    )


def complex_normal(key, shape) -> jnp.ndarray:
    """Circular complex Gaussian samples with unit mean power."""
    key_real, key_imag = jax.random.split(key)
    real_part = jax.random.normal(key_real, shape=shape, dtype=jnp.float64)
    imag_part = jax.random.normal(key_imag, shape=shape, dtype=jnp.float64)
    return (real_part + 1j * imag_part) / jnp.sqrt(2.0)


def add_shot_noise_to_field(
    field: jnp.ndarray,
    sim_params,
    noise_seed: int | None = None,
) -> jnp.ndarray:
    """Add quantum shot noise to a time-domain field.

    Every mode receives an independent realization of one photon per
    frequency bin with a uniformly random phase.

    Args:
        field: Complex electric field array, shape (n_modes, n_points).
        sim_params: SimParams matching the field's grid.
        noise_seed: Random seed for noise generation. If None, uses seed 0.

    Returns:
        Field array with shot noise added, same shape as input.
    """
    key = jax.random.PRNGKey(0 if noise_seed is None else noise_seed)
    amplitude = photon_noise_amplitude(sim_params)
    phases = jax.random.uniform(key, shape=field.shape, dtype=jnp.float64)
    noise_w = amplitude[jnp.newaxis, :] * jnp.exp(2j * jnp.pi * phases)
    return field + jnp.fft.ifft(noise_w, axis=-1)
