import logging
from typing import Optional

import jax.numpy as jnp
import numpy as np
from scipy.linalg import expm

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class RandomModeCoupling:
    """Random linear coupling between modes, e.g. from fiber bends and stress.

    A fixed random Hermitian matrix H with entries of order ``strength``
    (1/m) generates a unitary exp(i H Δz) that mixes the mode amplitudes of
    every accepted step. The total power is conserved.

    Args:
        n_modes (int): Number of field modes.
        strength (float): Coupling coefficient scale (1/m).
        seed (int | None): Seed of the random matrix.
        coupled_pairs (np.ndarray | None): Optional boolean (n_modes, n_modes)
            mask; only masked pairs couple (e.g. within degenerate groups).
    """

    def __init__(
        self,
        n_modes: int,
        strength: float,
        seed: Optional[int] = None,
        coupled_pairs: Optional[np.ndarray] = None,
    ):
        if n_modes < 1:
            raise ConfigurationError(f"n_modes must be positive, got {n_modes}")
        if strength < 0:
            raise ConfigurationError(f"Coupling strength must be non-negative, got {strength}")

        rng = np.random.default_rng(seed)
        raw = rng.normal(size=(n_modes, n_modes)) + 1j * rng.normal(size=(n_modes, n_modes))
        hermitian = (raw + raw.conj().T) / 2
        if coupled_pairs is not None:
            coupled_pairs = np.asarray(coupled_pairs, dtype=bool)
            if coupled_pairs.shape != (n_modes, n_modes):
                raise ConfigurationError(
                    f"coupled_pairs must have shape ({n_modes}, {n_modes}), got {coupled_pairs.shape}"
                )
            mask = coupled_pairs | coupled_pairs.T
            np.fill_diagonal(mask, True)
            hermitian = np.where(mask, hermitian, 0.0)

        self.n_modes = n_modes
        self.strength = float(strength)
        self.generator = strength * hermitian

    def unitary(self, delta_z: float) -> np.ndarray:
        return expm(1j * self.generator * delta_z)

    def apply(self, A_w: jnp.ndarray, delta_z: float) -> jnp.ndarray:
        """Mix the modes of ``A_w`` (n_modes, n_points) over a step ``delta_z``."""
        if A_w.shape[-2] != self.n_modes:
            raise ConfigurationError(
                f"Field has {A_w.shape[-2]} modes; the coupling was built for {self.n_modes}"
            )
        return jnp.asarray(self.unitary(delta_z)) @ A_w
