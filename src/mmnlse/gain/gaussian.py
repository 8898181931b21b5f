import logging
import math
from typing import Optional

import jax.numpy as jnp

from ..constants import C_m_s, THZ_TO_HZ
from ..errors import ConfigurationError
from .base import GainModel, GainStep

logger = logging.getLogger(__name__)


class GaussianGain(GainModel):
    """Small-signal gain with an optional Gaussian spectrum and energy saturation.

    g(ω) = g0 · exp(-4 ln2 (f - f_c)² / Δf²) / (1 + E / E_sat)

    where g0 = G_dB · ln(10) / 10 / L is the power gain coefficient that turns
    an unsaturated input into G_dB over the fiber length.

    Args:
        sim_params: SimParams of the run.
        small_signal_gain_db (float): Total small-signal gain over ``length`` (dB).
        length (float): Fiber length the gain is spread over (m).
        fwhm_nm (float | None): Gain bandwidth; None gives a flat spectrum.
        center_wavelength_nm (float | None): Gain peak; None uses the grid center.
        saturation_energy_nj (float): Pulse energy at which the gain halves.
    """

    def __init__(
        self,
        sim_params,
        small_signal_gain_db: float,
        length: float,
        fwhm_nm: Optional[float] = None,
        center_wavelength_nm: Optional[float] = None,
        saturation_energy_nj: float = math.inf,
    ):
        if length <= 0:
            raise ConfigurationError(f"Gain length must be positive, got {length}")
        if saturation_energy_nj <= 0:
            raise ConfigurationError("saturation_energy_nj must be positive")

        self.sim_params = sim_params
        self.g0 = small_signal_gain_db * math.log(10) / 10 / length
        self.saturation_energy_nj = saturation_energy_nj

        if fwhm_nm is None:
            spectrum = jnp.ones(sim_params.n_points)
        else:
            center_nm = center_wavelength_nm or sim_params.center_wavelength_um * 1e3
            center_hz = C_m_s / (center_nm * 1e-9)
            fwhm_hz = C_m_s * fwhm_nm * 1e-9 / (center_nm * 1e-9) ** 2
            freqs_hz = sim_params.freqs_abs_thz * THZ_TO_HZ
            spectrum = jnp.exp(-4 * math.log(2) * (freqs_hz - center_hz) ** 2 / fwhm_hz ** 2)
        self.spectrum = spectrum
        logger.debug("Gaussian gain: g0=%.4g 1/m, Esat=%s nJ", self.g0, saturation_energy_nj)

    def energy_nj(self, A_w: jnp.ndarray) -> float:
        n_points = self.sim_params.n_points
        return float(jnp.sum(jnp.abs(A_w) ** 2)) * self.sim_params.dt / n_points * 1e-3

    def fold(self, A_w, delta_z, state):
        saturation = 1.0
        if math.isfinite(self.saturation_energy_nj):
            saturation = 1.0 + self.energy_nj(A_w) / self.saturation_energy_nj
        g = (self.g0 / saturation) * self.spectrum[jnp.newaxis, :]
        return GainStep(g, state)
