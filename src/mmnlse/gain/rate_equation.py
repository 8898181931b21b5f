"""Two-level rate-equation gain with pump depletion and ASE.

The doped region is sampled on K transverse points. Each point k has an area
dA_k, a dopant density N_T,k, a normalized intensity I_m,k for every signal
mode (∫ I_m dA = 1 over the whole fiber cross section) and a normalized pump
intensity I_p,k. A single-mode fiber is simply K = 1.

At every z the steady-state upper population is

    N2 = N_T · W_a / (W_a + W_e + 1/τ),

with W_a, W_e the absorption and emission rates summed over signal, ASE and
pump photon fluxes. From N2 follow the signal gain per mode and frequency,
the pump gain and the spontaneous-emission source of the ASE. Powers are
advanced over a step with the exact constant-coefficient solution
P·exp(gΔz) + S·(exp(gΔz) - 1)/g.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import jax.numpy as jnp
import numpy as np
from scipy.interpolate import PchipInterpolator

from ..config import RateEquationConfig
from ..constants import C_m_s, H_PLANCK, PS_TO_S, THZ_TO_HZ
from ..errors import ConfigurationError
from .base import GainModel, GainState, GainStep

logger = logging.getLogger(__name__)


def cross_sections_from_table(
    wavelengths_nm,
    absorption_m2,
    emission_m2,
    sim_params,
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """Interpolate tabulated cross sections onto the simulation grid.

    Args:
        wavelengths_nm: Table wavelengths (nm), any order.
        absorption_m2: Absorption cross sections (m²).
        emission_m2: Emission cross sections (m²).
        sim_params: SimParams whose absolute frequencies are sampled.

    Returns:
        (sigma_a, sigma_e): Arrays of shape (n_points,) in FFT ordering. Values
        outside the table are zero.
    """
    wavelengths_nm = np.asarray(wavelengths_nm, dtype=np.float64)
    order = np.argsort(wavelengths_nm)
    wl = wavelengths_nm[order]
    grid_nm = C_m_s / (np.asarray(sim_params.freqs_abs_thz) * THZ_TO_HZ) * 1e9

    def _sample(values):
        interp = PchipInterpolator(wl, np.asarray(values, dtype=np.float64)[order], extrapolate=False)
        sampled = np.nan_to_num(interp(grid_nm), nan=0.0)
        return jnp.asarray(np.clip(sampled, 0.0, None))

    return _sample(absorption_m2), _sample(emission_m2)


def n_total_from_absorption(
    absorption_db_per_m: float,
    pump_absorption_m2: float,
    pump_overlap: float,
) -> float:
    """Dopant density (1/m³) from the small-signal pump absorption of the fiber."""
    if pump_absorption_m2 <= 0 or pump_overlap <= 0:
        raise ConfigurationError("pump cross section and overlap must be positive")
    alpha = absorption_db_per_m * np.log(10) / 10
    return alpha / (pump_absorption_m2 * pump_overlap)


@dataclass
class GainMedium:
    """Spectroscopy and geometry of the doped fiber.

    Attributes:
        absorption (jnp.ndarray): Signal absorption cross sections (m²), (n_points,).
        emission (jnp.ndarray): Signal emission cross sections (m²), (n_points,).
        pump_wavelength_nm (float): Pump wavelength.
        pump_absorption (float): Pump absorption cross section (m²).
        pump_emission (float): Pump emission cross section (m²).
        lifetime_s (float): Upper-state lifetime.
        n_total (jnp.ndarray): Dopant density (1/m³) at each of K points.
        areas (jnp.ndarray): Area (m²) of each point.
        signal_intensity (jnp.ndarray): (n_modes, K) normalized mode intensities (1/m²).
        pump_intensity (jnp.ndarray): (K,) normalized pump intensity (1/m²).
        repetition_rate_hz (float): Pulse repetition rate converting pulse
            energy into average power.
        grid_shape (tuple): Shape used to report N2; () for a single point.
        grid_mask (np.ndarray | None): Boolean mask of doped points in that grid.
        polarization_factor (int): Polarizations per mode carried by the ASE.
    """
    absorption: jnp.ndarray
    emission: jnp.ndarray
    pump_wavelength_nm: float
    pump_absorption: float
    pump_emission: float
    lifetime_s: float
    n_total: jnp.ndarray
    areas: jnp.ndarray
    signal_intensity: jnp.ndarray
    pump_intensity: jnp.ndarray
    repetition_rate_hz: float
    grid_shape: tuple = ()
    grid_mask: Optional[np.ndarray] = None
    polarization_factor: int = 2

    def __post_init__(self):
        self.n_total = jnp.atleast_1d(jnp.asarray(self.n_total, dtype=jnp.float64))
        self.areas = jnp.atleast_1d(jnp.asarray(self.areas, dtype=jnp.float64))
        self.signal_intensity = jnp.atleast_2d(jnp.asarray(self.signal_intensity, dtype=jnp.float64))
        self.pump_intensity = jnp.atleast_1d(jnp.asarray(self.pump_intensity, dtype=jnp.float64))
        self.absorption = jnp.asarray(self.absorption, dtype=jnp.float64)
        self.emission = jnp.asarray(self.emission, dtype=jnp.float64)

        k = self.n_total.shape[0]
        if self.areas.shape != (k,) or self.pump_intensity.shape != (k,) or self.signal_intensity.shape[1] != k:
            raise ConfigurationError(
                f"Transverse grid sizes disagree: n_total {self.n_total.shape}, areas {self.areas.shape}, "
                f"signal_intensity {self.signal_intensity.shape}, pump_intensity {self.pump_intensity.shape}"
            )
        if self.absorption.shape != self.emission.shape:
            raise ConfigurationError("absorption and emission cross sections differ in shape")
        if self.lifetime_s <= 0 or self.repetition_rate_hz <= 0:
            raise ConfigurationError("lifetime_s and repetition_rate_hz must be positive")

    @property
    def n_modes(self) -> int:
        return self.signal_intensity.shape[0]

    @property
    def n_total_max(self) -> float:
        return float(jnp.max(self.n_total))

    @classmethod
    def single_mode(
        cls,
        absorption,
        emission,
        pump_wavelength_nm: float,
        pump_absorption: float,
        pump_emission: float,
        lifetime_s: float,
        n_total: float,
        core_area_m2: float,
        repetition_rate_hz: float,
        signal_overlap: float = 1.0,
        pump_overlap: float = 1.0,
        n_modes: int = 1,
        polarized: bool = False,
    ) -> "GainMedium":
        """Uniformly doped core seen as one point with overlap factors."""
        return cls(
            absorption=absorption,
            emission=emission,
            pump_wavelength_nm=pump_wavelength_nm,
            pump_absorption=pump_absorption,
            pump_emission=pump_emission,
            lifetime_s=lifetime_s,
            n_total=jnp.array([n_total]),
            areas=jnp.array([core_area_m2]),
            signal_intensity=jnp.full((n_modes, 1), signal_overlap / core_area_m2),
            pump_intensity=jnp.array([pump_overlap / core_area_m2]),
            repetition_rate_hz=repetition_rate_hz,
            polarization_factor=1 if polarized else 2,
        )

    @classmethod
    def from_mode_profiles(
        cls,
        profiles,
        dx_m: float,
        n_total_grid,
        absorption,
        emission,
        pump_wavelength_nm: float,
        pump_absorption: float,
        pump_emission: float,
        lifetime_s: float,
        repetition_rate_hz: float,
        cladding_area_m2: float,
        polarized: bool = False,
    ) -> "GainMedium":
        """Doped region resolved on the mode-profile grid (multimode N2).

        Args:
            profiles: (n_spatial_modes, Nx, Ny) mode field profiles.
            dx_m: Grid spacing (m).
            n_total_grid: (Nx, Ny) dopant density; zero outside the doped core.
            cladding_area_m2: Inner-cladding area the pump fills uniformly.
            polarized: Repeat every spatial mode for x and y polarization.
            Remaining arguments as in the class attributes.
        """
        profiles = np.asarray(profiles, dtype=np.float64)
        n_total_grid = np.asarray(n_total_grid, dtype=np.float64)
        if profiles.shape[1:] != n_total_grid.shape:
            raise ConfigurationError(
                f"Mode profiles {profiles.shape[1:]} and n_total grid {n_total_grid.shape} differ"
            )
        dA = dx_m ** 2
        intensity = np.abs(profiles) ** 2
        intensity = intensity / (np.sum(intensity, axis=(1, 2), keepdims=True) * dA)
        if polarized:
            intensity = np.repeat(intensity, 2, axis=0)

        mask = n_total_grid > 0
        k = int(mask.sum())
        return cls(
            absorption=absorption,
            emission=emission,
            pump_wavelength_nm=pump_wavelength_nm,
            pump_absorption=pump_absorption,
            pump_emission=pump_emission,
            lifetime_s=lifetime_s,
            n_total=jnp.asarray(n_total_grid[mask]),
            areas=jnp.full((k,), dA),
            signal_intensity=jnp.asarray(intensity[:, mask]),
            pump_intensity=jnp.full((k,), 1.0 / cladding_area_m2),
            repetition_rate_hz=repetition_rate_hz,
            grid_shape=n_total_grid.shape,
            grid_mask=mask,
            polarization_factor=1 if polarized else 2,
        )

    def n2_to_grid(self, n2) -> np.ndarray:
        """Spread the K-point N2 back onto ``grid_shape`` (zeros where undoped)."""
        n2 = np.asarray(n2)
        if self.grid_mask is None:
            return n2.reshape(self.grid_shape) if self.grid_shape else n2.reshape(())
        grid = np.zeros(self.grid_shape)
        grid[self.grid_mask] = n2
        return grid


def _propagate_power(power, g, source, delta_z):
    """Exact solution of dP/dz = g P + S over a step with constant g and S."""
    gz = g * delta_z
    growth = jnp.exp(gz)
    safe_g = jnp.where(jnp.abs(gz) > 1e-12, g, 1.0)
    integral = jnp.where(jnp.abs(gz) > 1e-12, jnp.expm1(gz) / safe_g, delta_z)
    return jnp.maximum(power * growth + source * integral, 0.0)


class RateEquationGain(GainModel):
    """Rate-equation gain solver.

    Args:
        medium (GainMedium): Doped-fiber description.
        config (RateEquationConfig): Pump powers, ASE switch and iteration controls.
        sim_params: SimParams of the run; the cross sections must be on this grid.
    """

    plane_resolved = True

    def __init__(self, medium: GainMedium, config: RateEquationConfig, sim_params):
        if medium.absorption.shape != (sim_params.n_points,):
            raise ConfigurationError(
                f"Cross sections have shape {medium.absorption.shape}; expected ({sim_params.n_points},)"
            )
        self.medium = medium
        self.config = config
        self.sim_params = sim_params
        self.include_ase = config.include_ase

        freqs_hz = jnp.asarray(sim_params.freqs_abs_thz) * THZ_TO_HZ
        self.photon_energy = H_PLANCK * jnp.where(freqs_hz > 0, freqs_hz, 1.0)
        self.pump_photon_energy = H_PLANCK * C_m_s / (medium.pump_wavelength_nm * 1e-9)
        # |A_w|^2 -> average power per bin (W)
        self.power_per_bin = sim_params.dt * PS_TO_S * medium.repetition_rate_hz / sim_params.n_points

        self._sigma_sum = medium.absorption + medium.emission
        self._overlap_nt = medium.signal_intensity @ (medium.areas * medium.n_total)
        self._pump_overlap_nt = jnp.sum(medium.pump_intensity * medium.areas * medium.n_total)
        self._ase_quantum = medium.polarization_factor * self.photon_energy * sim_params.df_hz

    def initial_state(self) -> GainState:
        """Pumps at their launch values, no ASE yet.

        A counter-propagating pump only enters at z = L, so the state at
        z = 0 holds it only once the backward pass has filled it in.
        """
        shape = (self.medium.n_modes, self.sim_params.n_points)
        ase = jnp.zeros(shape) if self.include_ase else None
        return GainState(self.config.copump_power, 0.0, ase, ase)

    def signal_power(self, A_w: jnp.ndarray) -> jnp.ndarray:
        """Average power per bin (W) of a field spectrum (..., n_modes, n_points)."""
        return jnp.abs(A_w) ** 2 * self.power_per_bin

    def inversion(self, A_w: jnp.ndarray, state: GainState) -> jnp.ndarray:
        """N2 for a field spectrum (n_modes, n_points) and the powers in ``state``."""
        return self.population(self._flux_rates(self.signal_power(A_w)), state)

    def _flux_rates(self, power_bins):
        """Absorption/emission photon flux weights per mode, (..., n_modes)."""
        flux = power_bins / self.photon_energy
        return (
            jnp.sum(flux * self.medium.absorption, axis=-1),
            jnp.sum(flux * self.medium.emission, axis=-1),
        )

    def _ase_total(self, state: GainState):
        total = 0.0
        if state.ase_forward is not None:
            total = total + state.ase_forward
        if state.ase_backward is not None:
            total = total + state.ase_backward
        return total

    def population(self, signal_rates, state: GainState) -> jnp.ndarray:
        """Upper-state density N2 (1/m³) at each transverse point.

        Args:
            signal_rates: (absorption, emission) flux weights of the signal, each (n_modes,).
            state: Pump and ASE powers at this z.
        """
        medium = self.medium
        rate_a, rate_e = signal_rates
        ase = self._ase_total(state)
        if not isinstance(ase, float):
            ase_a, ase_e = self._flux_rates(ase)
            rate_a, rate_e = rate_a + ase_a, rate_e + ase_e

        pump_flux = (state.pump_forward + state.pump_backward) / self.pump_photon_energy
        W_a = rate_a @ medium.signal_intensity + medium.pump_absorption * pump_flux * medium.pump_intensity
        W_e = rate_e @ medium.signal_intensity + medium.pump_emission * pump_flux * medium.pump_intensity
        n2 = medium.n_total * W_a / (W_a + W_e + 1.0 / medium.lifetime_s)
        return jnp.clip(n2, 0.0, medium.n_total)

    def coefficients(self, n2: jnp.ndarray):
        """Signal gain (n_modes, n_points), pump gain, ASE source (n_modes, n_points)."""
        medium = self.medium
        overlap_n2 = medium.signal_intensity @ (medium.areas * n2)
        g = self._sigma_sum[jnp.newaxis, :] * overlap_n2[:, jnp.newaxis] \
            - medium.absorption[jnp.newaxis, :] * self._overlap_nt[:, jnp.newaxis]
        pump_n2 = jnp.sum(medium.pump_intensity * medium.areas * n2)
        g_pump = (medium.pump_absorption + medium.pump_emission) * pump_n2 \
            - medium.pump_absorption * self._pump_overlap_nt
        source = self._ase_quantum[jnp.newaxis, :] * medium.emission[jnp.newaxis, :] * overlap_n2[:, jnp.newaxis]
        return g, g_pump, source

    def _advance_forward(self, state: GainState, g, g_pump, source, delta_z) -> GainState:
        pump_forward = _propagate_power(state.pump_forward, g_pump, 0.0, delta_z)
        ase_forward = state.ase_forward
        if ase_forward is not None:
            ase_forward = _propagate_power(ase_forward, g, source, delta_z)
        return state._replace(pump_forward=pump_forward, ase_forward=ase_forward)

    def fold(self, A_w, delta_z, state):
        n2 = self.inversion(A_w, state)
        g, g_pump, source = self.coefficients(n2)
        return GainStep(g, self._advance_forward(state, g, g_pump, source, delta_z), n2)

    def per_plane(self, A_w_planes, small_delta_z, state):
        """Gain at each MPA plane, carrying pump and forward ASE across planes.

        The signal flux of all planes is reduced in one vectorized pass; only
        the scalar pump and the ASE spectrum are stepped plane by plane.

        Returns:
            (g_planes, end_state, n2_last): gains of shape (M+1, n_modes, n_points),
            the state at the last plane and N2 there.
        """
        rates_a, rates_e = self._flux_rates(self.signal_power(A_w_planes))
        gains = []
        n2 = None
        for k in range(A_w_planes.shape[0]):
            n2 = self.population((rates_a[k], rates_e[k]), state)
            g, g_pump, source = self.coefficients(n2)
            gains.append(g)
            if k < A_w_planes.shape[0] - 1:
                state = self._advance_forward(state, g, g_pump, source, small_delta_z)
        return jnp.stack(gains), state, n2

    def backward_step(self, A_w, state: GainState, delta_z: float, ignore_signal: bool = False) -> GainState:
        """Carry the backward pump and ASE from z + Δz to z.

        Args:
            A_w: Forward signal spectrum at z + Δz.
            state: All powers at z + Δz.
            delta_z: Grid interval (m).
            ignore_signal: Solve without the signal (the seeding pass).

        Returns:
            GainState with the backward quantities at z; forward ones untouched.
        """
        if ignore_signal:
            zeros = jnp.zeros(self.medium.n_modes)
            rates = (zeros, zeros)
        else:
            rates = self._flux_rates(self.signal_power(A_w))
        n2 = self.population(rates, state)
        g, g_pump, source = self.coefficients(n2)
        pump_backward = _propagate_power(state.pump_backward, g_pump, 0.0, delta_z)
        ase_backward = state.ase_backward
        if ase_backward is not None:
            ase_backward = _propagate_power(ase_backward, g, source, delta_z)
        return state._replace(pump_backward=pump_backward, ase_backward=ase_backward)
