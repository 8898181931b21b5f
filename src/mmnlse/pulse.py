from typing import Union

import jax
import jax.numpy as jnp

from .sim import SimParams
from .utils.noise import add_shot_noise_to_field
from .utils.common import _return_float_if_possible


FloatLike = Union[float, jnp.ndarray]

jax.config.update("jax_enable_x64", True)


class Pulse:
    """Multimode optical pulse in time domain.

    Attributes:
        sim_params (SimParams): Simulation parameters (grid, frequencies).
        field (jnp.ndarray): Complex electric field in sqrt(W), shape (n_modes, n_points).
        n_modes (int): Number of spatial/polarization modes.
    """
    def __init__(self, sim_params: SimParams, field_t: jnp.ndarray):
        """Initialize Pulse object.

        Args:
            sim_params (SimParams): Simulation parameters object.
            field_t (jnp.ndarray): Complex electric field, shape (n_modes, n_points).
        """
        self.sim_params = sim_params

        field_t = jnp.asarray(field_t)
        if field_t.ndim == 1:
            field_t = field_t[jnp.newaxis, :]
        if field_t.ndim != 2 or field_t.shape[1] != self.sim_params.n_points:
            raise ValueError(
                f"Field shape {field_t.shape} does not match SimParams size {self.sim_params.n_points}; "
                "expected (n_modes, n_points)."
            )

        self.field = field_t.astype(jnp.complex128)
        self.n_modes = self.field.shape[0]

    def __getattr__(self, name: str):
        """Delegate grid attributes (t, dt, n_points, omega_abs, ...) to sim_params."""
        if name != 'sim_params' and hasattr(self.sim_params, name):
            return getattr(self.sim_params, name)
        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    @classmethod
    def from_frequency(cls, sim_params: SimParams, field_w: jnp.ndarray) -> "Pulse":
        """Build a pulse from its FFT-ordered spectrum ``fft(A_t)``."""
        return cls(sim_params, jnp.fft.ifft(field_w, axis=-1))

    @classmethod
    def gaussian(
        cls,
        peak_power_w: float,
        fwhm_ps: float,
        n_modes: int,
        sim_params: SimParams,
        modal_coefficients: jnp.ndarray | None = None,
        center_ps: float = 0.0,
        normalize_modal_coefficients: bool = True,
        supergaussian_order: int = 1,
        chirp: float = 0.0,
        include_shot_noise: bool = False,
        noise_seed: int | None = None,
    ) -> "Pulse":
        """Create Gaussian or super-Gaussian pulse.

        The pulse envelope is given by:

        A(t) = √P₀ exp(-[(t - t₀)/σ]^(2n) / 2) exp(i·C·(t - t₀)²/2)

        Args:
            peak_power_w (float): Peak power (W).
            fwhm_ps (float): Full width at half maximum of the intensity (ps).
            n_modes (int): Number of modes in the field.
            sim_params (SimParams): Grid the pulse lives on.
            modal_coefficients (jnp.ndarray | None): Mode coefficients. If None, mode 0 only.
            center_ps (float): Center time (ps). Defaults to 0.0.
            normalize_modal_coefficients (bool): Rescale the coefficients to unit L2 norm.
            supergaussian_order (int): Super-Gaussian order (1=Gaussian). Defaults to 1.
            chirp (float): Linear chirp parameter (THz²). Defaults to 0.0.
            include_shot_noise (bool): Add one photon per frequency bin. Defaults to False.
            noise_seed (int | None): Random seed for noise. Defaults to None.

        Returns:
            Pulse: Pulse object with specified properties.
        """
        coeffs = _modal_coefficients(modal_coefficients, n_modes, normalize_modal_coefficients)
        times = sim_params.t

        sigma = fwhm_ps / (2 * (jnp.log(2))**(1 / (2 * supergaussian_order)))
        exponent = 2 * supergaussian_order
        envelope = jnp.sqrt(peak_power_w) * jnp.exp(
            -((times - center_ps) ** exponent) / (2 * sigma ** exponent)
        )
        if chirp != 0.0:
            envelope = envelope * jnp.exp(1j * chirp * (times - center_ps) ** 2 / 2.0)

        field = jnp.outer(coeffs, envelope)
        if include_shot_noise:
            field = add_shot_noise_to_field(field, sim_params, noise_seed=noise_seed)
        return cls(sim_params, field)

    @classmethod
    def secant(
        cls,
        peak_power_w: float,
        fwhm_ps: float,
        n_modes: int,
        sim_params: SimParams,
        modal_coefficients: jnp.ndarray | None = None,
        normalize_modal_coefficients: bool = True,
        center_ps: float = 0.0,
    ) -> "Pulse":
        """Create hyperbolic secant (sech) pulse.

        A(t) = √P₀ sech((t - t₀)/T₀),  T₀ = FWHM / (2 arccosh(√2))

        Returns:
            Pulse: Pulse object with sech profile.
        """
        coeffs = _modal_coefficients(modal_coefficients, n_modes, normalize_modal_coefficients)
        T0 = fwhm_ps / (2 * jnp.arccosh(jnp.sqrt(2)))
        envelope = jnp.sqrt(peak_power_w) / jnp.cosh((sim_params.t - center_ps) / T0)
        return cls(sim_params, jnp.outer(coeffs, envelope))

    def __getitem__(self, idx):
        """Extract pulse for specific mode(s).

        Example:
            single_mode_pulse = my_pulse[0]
        """
        sub_field = jnp.take(self.field, idx, axis=0)
        if sub_field.ndim == 1:
            sub_field = sub_field[jnp.newaxis, :]
        return self.__class__(self.sim_params, sub_field)

    @property
    def field_w(self) -> jnp.ndarray:
        """Spectrum in FFT ordering, ``fft(field)``."""
        return jnp.fft.fft(self.field, axis=-1)

    def get_intensity(self) -> jnp.ndarray:
        """Get intensity of each mode, shape (n_modes, n_points)."""
        return jnp.abs(self.field) ** 2

    def get_spectrum(self) -> jnp.ndarray:
        """Get power spectral density of each mode (shifted ordering)."""
        F = jnp.fft.fftshift(self.field_w, axes=-1)
        return jnp.abs(F) ** 2

    def get_peak_power(self) -> FloatLike:
        """Peak of the incoherent total power (W)."""
        return _return_float_if_possible(jnp.max(jnp.sum(self.get_intensity(), axis=0)))

    def get_modal_energies(self) -> jnp.ndarray:
        """Energy of each mode (pJ), shape (n_modes,)."""
        return jnp.sum(self.get_intensity(), axis=-1) * self.sim_params.dt

    def get_energy(self) -> FloatLike:
        """Get total energy.

        Returns:
            float: Total energy (pJ).
        """
        return _return_float_if_possible(jnp.sum(self.get_modal_energies()))

    def get_energy_nj(self) -> FloatLike:
        """Get total energy in nJ."""
        return _return_float_if_possible(self.get_energy() * 1e-3)


def _modal_coefficients(modal_coefficients, n_modes: int, normalize: bool) -> jnp.ndarray:
    if modal_coefficients is None:
        modal_coefficients = jnp.zeros(n_modes, dtype=jnp.complex128).at[0].set(1.0)
    if len(modal_coefficients) != n_modes:
        raise ValueError("Length of `modal_coefficients` must match `n_modes`.")

    coeffs = jnp.asarray(modal_coefficients, dtype=jnp.complex128)
    if normalize:
        norm = jnp.linalg.norm(coeffs)
        if float(norm) == 0.0:
            raise ValueError("`modal_coefficients` cannot all be zero when normalization is requested.")
        coeffs = coeffs / norm
    return coeffs
