import jax.numpy as jnp
import numpy as np
from jax.scipy.special import factorial
from typing import Optional

from .constants import C_m_ps
from .errors import ConfigurationError


class Fiber:
    """
    A multimode fiber segment: dispersion, loss and the spatial overlap tensor.
    """
    def __init__(
        self,
        betas: jnp.ndarray,
        sr_tensor: jnp.ndarray,
        length: float,
        n2: float = 2.3e-20,
        loss_db_per_m: float = 0.0,
        material: str = "silica",
        num_modes: Optional[int] = None,
    ):
        """
        Initializes the Fiber object.

        Args:
            betas (jnp.ndarray): A 2D array of shape `(num_orders, num_modes)`
                containing the Taylor expansion coefficients of the propagation
                constant (β) for each mode. Units are ps^n/m. For polarized
                fields `num_modes` may be either the number of spatial modes
                (degenerate polarizations) or twice that.
            sr_tensor (jnp.ndarray): Spatial overlap tensor S^R_plmn (1/m²),
                shape (m, m, m, m) with m spatial modes.
            length (float): Fiber length (m).
            n2 (float): Nonlinear refractive index (m²/W). Defaults to 2.3e-20.
            loss_db_per_m (float): Power loss (dB/m). Defaults to 0.
            material (str): Raman material, 'silica' or 'chalcogenide'.
            num_modes (int, optional): Keep only the first `num_modes` spatial modes.
        """
        betas = jnp.atleast_2d(jnp.asarray(betas, dtype=jnp.float64))
        sr_tensor = jnp.asarray(sr_tensor, dtype=jnp.float64)
        if sr_tensor.ndim != 4 or len(set(sr_tensor.shape)) != 1:
            raise ConfigurationError(
                f"sr_tensor must have shape (m, m, m, m), got {sr_tensor.shape}"
            )
        if betas.shape[0] < 2:
            raise ConfigurationError(
                f"betas must contain at least beta0 and beta1, got shape {betas.shape}"
            )

        if num_modes is not None:
            if num_modes <= 0:
                raise ConfigurationError(f"num_modes must be positive, got {num_modes}")
            if num_modes > sr_tensor.shape[0]:
                raise ConfigurationError(
                    f"num_modes ({num_modes}) exceeds available modes ({sr_tensor.shape[0]})"
                )
            per_spatial_mode = 2 if betas.shape[1] == 2 * sr_tensor.shape[0] else 1
            sr_tensor = sr_tensor[:num_modes, :num_modes, :num_modes, :num_modes]
            betas = betas[:, :num_modes * per_spatial_mode]

        if length <= 0:
            raise ConfigurationError(f"Fiber length must be positive, got {length}")

        self.betas = betas
        self.sr_tensor = sr_tensor
        self.length = float(length)
        self.n2 = float(n2)
        self.loss_db_per_m = float(loss_db_per_m)
        self.material = material.lower()
        self.num_spatial_modes = sr_tensor.shape[0]

    @property
    def alpha(self) -> float:
        """Power attenuation coefficient (1/m)."""
        return self.loss_db_per_m * np.log(10) / 10

    def expand_betas(self, n_field_modes: int, scalar: bool) -> jnp.ndarray:
        """Return betas with one column per field mode.

        For polarized fields given with spatial-mode betas only, each column is
        repeated so that the layout becomes [m1x, m1y, m2x, m2y, ...].
        """
        n_beta_modes = self.betas.shape[1]
        if scalar:
            if n_beta_modes != n_field_modes or self.num_spatial_modes != n_field_modes:
                raise ConfigurationError(
                    f"Scalar fields need matching mode counts: field {n_field_modes}, "
                    f"betas {n_beta_modes}, sr_tensor {self.num_spatial_modes}"
                )
            return self.betas

        if n_field_modes != 2 * self.num_spatial_modes:
            raise ConfigurationError(
                f"Polarized fields need 2x the spatial modes: field {n_field_modes}, "
                f"sr_tensor {self.num_spatial_modes}"
            )
        if n_beta_modes == n_field_modes:
            return self.betas
        if n_beta_modes == self.num_spatial_modes:
            return jnp.repeat(self.betas, 2, axis=1)
        raise ConfigurationError(
            f"betas have {n_beta_modes} modes; expected {self.num_spatial_modes} or {n_field_modes}"
        )

    def get_dispersion_operator(
        self,
        omega_relative: jnp.ndarray,
        n_field_modes: Optional[int] = None,
        scalar: bool = True,
    ) -> jnp.ndarray:
        """
        Calculates the dispersion operator for each mode in the frequency domain.

        The dispersion operator for mode p is given by:

        D_p(ω) = i[β₀_p - β₀₀] + i[β₁_p - β₁₀](ω - ω₀)
                 + i Σ_{k=2}^N (β_k_p / k!) (ω - ω₀)^k - α/2

        The reference values β₀₀ and β₁₀ come from the first mode, so the
        simulation moves with the group velocity of that mode.

        Args:
            omega_relative (jnp.ndarray): Relative angular frequency array
                in rad/ps (ω - ω₀), FFT ordering.
            n_field_modes (int, optional): Number of modes in the field. Defaults
                to the number of spatial modes.
            scalar (bool): Whether the field is scalar or polarized.

        Returns:
            jnp.ndarray: A 2D array of shape `(num_modes, num_freq_points)`.
        """
        if n_field_modes is None:
            n_field_modes = self.num_spatial_modes
        betas = self.expand_betas(n_field_modes, scalar)

        omega = omega_relative[jnp.newaxis, :]
        D = (
            1j * (betas[0, :, jnp.newaxis] - betas[0, 0]) +
            1j * (betas[1, :, jnp.newaxis] - betas[1, 0]) * omega
        )
        for order in range(2, betas.shape[0]):
            D = D + 1j * (betas[order, :, jnp.newaxis] / factorial(order)) * omega ** order
        return (D - self.alpha / 2).astype(jnp.complex128)

    def get_nonlinear_prefactor(self, omega_abs: jnp.ndarray) -> jnp.ndarray:
        """γ(ω) = i n₂ ω / c in m/W, shape (n_points,)."""
        return 1j * self.n2 * omega_abs / C_m_ps
