"""Raman response functions in the frequency domain.

Model 1 is the single damped vibration of Agrawal, Nonlinear Fiber Optics
(5th ed.), Ch. 2.3. Model 2 adds the anisotropic Boson-peak part of Lin and
Agrawal, "Raman response function for silica fibers" (2006).
"""

import logging
from typing import NamedTuple, Optional

import jax
import jax.numpy as jnp

from .constants import HBAR, K_BOLTZMANN, PS_TO_S
from .errors import ConfigurationError
from .utils.noise import photon_noise_amplitude, complex_normal

logger = logging.getLogger(__name__)

# (fR, tau1 ps, tau2 ps) for the single-vibration model
_SINGLE_VIBRATION = {
    'silica': (0.18, 0.0122, 0.032),
    'chalcogenide': (0.115, 0.0152, 0.2305),
}

# Lin-Agrawal silica model
_LIN_AGRAWAL = {
    'fr': 0.245,
    'fa': 0.75,
    'fb': 0.21,
    'fc': 0.04,
    'tau1': 0.0122,
    'tau2': 0.032,
    'taub': 0.096,
}


class RamanResponse(NamedTuple):
    """Raman fraction and kernels ready for ``ifft(hw * fft(x))`` convolution.

    Attributes:
        model (int): 0 (none), 1 (single vibration) or 2 (with anisotropic part).
        fr (float): Fractional Raman contribution to the nonlinearity.
        haw (jnp.ndarray | None): Isotropic kernel, shape (n_points,), FFT ordering.
        hbw (jnp.ndarray | None): Anisotropic kernel, only for polarized model 2.
        fractions (tuple): Isotropic and anisotropic weights (fa + fc, fb).
    """
    model: int
    fr: float
    haw: Optional[jnp.ndarray]
    hbw: Optional[jnp.ndarray]
    fractions: tuple

    @property
    def enabled(self) -> bool:
        return self.model != 0

    @property
    def anisotropic(self) -> bool:
        return self.hbw is not None


def _to_frequency(h_t: jnp.ndarray, dt: float) -> jnp.ndarray:
    """Normalize a causal kernel to unit area and return ``fft(h) * dt``."""
    area = jnp.sum(h_t) * dt
    return jnp.fft.fft(h_t / area) * dt


def _vibration_kernel(t: jnp.ndarray, tau1: float, tau2: float) -> jnp.ndarray:
    return (tau1 ** 2 + tau2 ** 2) / (tau1 * tau2 ** 2) * jnp.exp(-t / tau2) * jnp.sin(t / tau1)


def _boson_kernel(t: jnp.ndarray, taub: float) -> jnp.ndarray:
    return (2 * taub - t) / taub ** 2 * jnp.exp(-t / taub)


def raman_response(
    model: int,
    n_points: int,
    dt: float,
    material: str = "silica",
    scalar: bool = True,
) -> RamanResponse:
    """Build the Raman response for a grid.

    Args:
        model: 0, 1 or 2.
        n_points: Number of time points.
        dt: Time step (ps).
        material: 'silica' or 'chalcogenide'. Model 2 exists for silica only.
        scalar: Scalar fields fold the anisotropic part of model 2 into the
            isotropic kernel because the two cannot be told apart.

    Returns:
        RamanResponse: Kernels in the frequency domain.
    """
    if model == 0:
        return RamanResponse(0, 0.0, None, None, (0.0, 0.0))

    t = jnp.arange(n_points, dtype=jnp.float64) * dt
    material = material.lower()

    if model == 1:
        if material not in _SINGLE_VIBRATION:
            raise ConfigurationError(
                f"Unknown Raman material '{material}'. Options: {sorted(_SINGLE_VIBRATION)}"
            )
        fr, tau1, tau2 = _SINGLE_VIBRATION[material]
        haw = _to_frequency(_vibration_kernel(t, tau1, tau2), dt)
        return RamanResponse(1, fr, haw, None, (1.0, 0.0))

    if model == 2:
        if material != 'silica':
            raise ConfigurationError("Raman model 2 is only available for silica.")
        p = _LIN_AGRAWAL
        ha = _to_frequency(_vibration_kernel(t, p['tau1'], p['tau2']), dt)
        hb = _to_frequency(_boson_kernel(t, p['taub']), dt)
        haw = p['fa'] * ha + p['fc'] * hb
        hbw = p['fb'] * hb
        if scalar:
            return RamanResponse(2, p['fr'], haw + hbw, None, (p['fa'] + p['fc'], p['fb']))
        return RamanResponse(2, p['fr'], haw, hbw, (p['fa'] + p['fc'], p['fb']))

    raise ConfigurationError(f"raman_model must be 0, 1 or 2, got {model}")


class SpontaneousRaman:
    """Seeded source of the spontaneous Raman scattering term.

    The noise field holds one photon per frequency bin weighted by the
    phonon occupation: ``n_th + 1`` on the Stokes side and ``n_th`` on the
    anti-Stokes side. Its intensity, convolved with the Raman response,
    acts like an extra isotropic Raman contribution multiplying every mode.

    Args:
        sim_params: SimParams of the run.
        response (RamanResponse): Raman kernels; must be enabled.
        sr_fundamental (float): S^R_0000 of the fundamental mode (1/m²).
        temperature_k (float): Phonon bath temperature. Defaults to 300 K.
    """

    def __init__(self, sim_params, response: RamanResponse, sr_fundamental: float, temperature_k: float = 300.0):
        if not response.enabled:
            raise ConfigurationError("Spontaneous Raman scattering needs a Raman model (raman_model != 0).")
        self.response = response
        self.scale = response.fr * float(sr_fundamental)

        omega_hz = jnp.abs(sim_params.omega_relative) / PS_TO_S
        x = HBAR * omega_hz / (K_BOLTZMANN * temperature_k)
        n_thermal = jnp.where(x > 0, 1.0 / jnp.expm1(jnp.where(x > 0, x, 1.0)), 0.0)
        stokes = sim_params.omega_relative < 0
        occupation = jnp.where(stokes, n_thermal + 1.0, n_thermal)
        self.amplitude = photon_noise_amplitude(sim_params) * jnp.sqrt(occupation)
        logger.debug("Spontaneous Raman source ready (T=%.1f K)", temperature_k)

    def realize(self, key) -> jnp.ndarray:
        """Draw one realization of Γ_spon(t), shape (n_points,)."""
        noise_t = jnp.fft.ifft(self.amplitude * complex_normal(key, self.amplitude.shape))
        intensity = jnp.abs(noise_t) ** 2
        return jnp.fft.ifft(self.response.haw * jnp.fft.fft(intensity)) * self.scale

    def realize_for_step(self, base_key, step_index: int) -> jnp.ndarray:
        """Realization tied to an accepted-step counter, reproducible for a seed."""
        return self.realize(jax.random.fold_in(base_key, step_index))
