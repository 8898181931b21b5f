"""Propagation result container with convenient helper methods.

This module provides the PropagationResult class which holds the saved
fields and gain quantities of a run and provides methods for accessing
pulses, energies and spectra at the save points.
"""

from typing import List, Optional

import jax.numpy as jnp
import numpy as np

from .pulse import Pulse


class PropagationResult:
    """Container for propagation results.

    Attributes:
        sim_params (SimParams): Grid of the run.
        z (np.ndarray): Save positions (m), shape (n_save,).
        delta_z (np.ndarray): Step size in use at each save point (m).
        fields (np.ndarray): Time-domain fields, shape (n_save, n_modes, n_points).
        t_delay (np.ndarray): Accumulated pulse-centering delay (ps).
        pump_forward (np.ndarray | None): Forward pump power (W) at save points.
        pump_backward (np.ndarray | None): Backward pump power (W).
        ase_forward (np.ndarray | None): Forward ASE (W per bin, fftshifted),
            shape (n_save, n_modes, n_points).
        ase_backward (np.ndarray | None): Backward ASE, same layout.
        n2 (np.ndarray | None): Upper-state population as a fraction of the
            peak dopant density, shape (n_save, *grid).
        seconds (float): Wall-clock time of the run.
        stats (dict): Step counts, rejected steps, MPA iteration histogram,
            outer iterations, energy history.
        converged (bool): False when the forward/backward iteration ran out of
            iterations before reaching its tolerance.
    """

    def __init__(
        self,
        sim_params,
        z,
        delta_z,
        fields,
        t_delay,
        stats: dict,
        seconds: float = 0.0,
        pump_forward=None,
        pump_backward=None,
        ase_forward=None,
        ase_backward=None,
        n2=None,
        converged: bool = True,
    ):
        fields = np.asarray(fields)
        if fields.shape[0] != len(z):
            raise ValueError(
                f"Number of saved fields ({fields.shape[0]}) must match number of z points ({len(z)})"
            )
        self.sim_params = sim_params
        self.z = np.asarray(z)
        self.delta_z = np.asarray(delta_z)
        self.fields = fields
        self.t_delay = np.asarray(t_delay)
        self.pump_forward = None if pump_forward is None else np.asarray(pump_forward)
        self.pump_backward = None if pump_backward is None else np.asarray(pump_backward)
        self.ase_forward = None if ase_forward is None else np.asarray(ase_forward)
        self.ase_backward = None if ase_backward is None else np.asarray(ase_backward)
        self.n2 = None if n2 is None else np.asarray(n2)
        self.seconds = float(seconds)
        self.stats = stats
        self.converged = converged

    @property
    def n_save(self) -> int:
        return self.fields.shape[0]

    @property
    def pulses(self) -> List[Pulse]:
        """One Pulse per save point."""
        return [Pulse(self.sim_params, jnp.asarray(field)) for field in self.fields]

    def get_input_pulse(self) -> Pulse:
        return Pulse(self.sim_params, jnp.asarray(self.fields[0]))

    def get_final_pulse(self) -> Pulse:
        return Pulse(self.sim_params, jnp.asarray(self.fields[-1]))

    def energies_nj(self, per_mode: bool = False) -> np.ndarray:
        """Pulse energy at each save point (nJ).

        Args:
            per_mode: Return shape (n_save, n_modes) instead of (n_save,).
        """
        energies = np.sum(np.abs(self.fields) ** 2, axis=-1) * self.sim_params.dt * 1e-3
        return energies if per_mode else energies.sum(axis=-1)

    def spectra(self, index: Optional[int] = None) -> np.ndarray:
        """|A(ω)|² in shifted frequency order, for one save point or all of them."""
        fields = self.fields if index is None else self.fields[index]
        spectrum_w = np.fft.fft(fields, axis=-1)
        return np.fft.fftshift(np.abs(spectrum_w) ** 2, axes=-1)

    def total_ase_power(self):
        """(forward, backward) ASE power (W) summed over modes and frequency."""
        if self.ase_forward is None:
            return None
        return self.ase_forward.sum(axis=(-2, -1)), self.ase_backward.sum(axis=(-2, -1))

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(n_save={self.n_save}, n_modes={self.fields.shape[1]}, "
            f"z_end={float(self.z[-1]):.4g} m, converged={self.converged})"
        )
