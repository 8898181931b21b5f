from typing import NamedTuple, Optional

import jax.numpy as jnp


class GainState(NamedTuple):
    """Pump and ASE powers carried from one z position to the next.

    Attributes:
        pump_forward: Co-propagating pump power (W).
        pump_backward: Counter-propagating pump power (W).
        ase_forward: Forward ASE power per frequency bin (W), shape
            (n_modes, n_points) in FFT ordering, or None when ASE is ignored.
        ase_backward: Backward ASE power per bin, same layout.
    """
    pump_forward: float = 0.0
    pump_backward: float = 0.0
    ase_forward: Optional[jnp.ndarray] = None
    ase_backward: Optional[jnp.ndarray] = None


class GainStep(NamedTuple):
    """Result of evaluating a gain model over one step.

    Attributes:
        g: Power gain coefficient (1/m), broadcastable to (n_modes, n_points),
            or None for a passive fiber.
        state: Gain state at the end of the step.
        n2: Upper-state population at the start of the step (1/m³), or None.
    """
    g: Optional[jnp.ndarray]
    state: GainState
    n2: Optional[jnp.ndarray] = None


class GainModel:
    """Interface shared by all gain models.

    ``fold`` returns a gain coefficient that the steppers fold into the
    interaction-picture operator as exp(g Δz / 2) next to dispersion.
    Models with ``plane_resolved = True`` additionally provide ``per_plane``
    so that MPA can re-solve them at every parallel plane on every iteration.
    """

    plane_resolved = False

    def initial_state(self) -> GainState:
        return GainState()

    def fold(self, A_w: jnp.ndarray, delta_z: float, state: GainState) -> GainStep:
        raise NotImplementedError

    def per_plane(self, A_w_planes: jnp.ndarray, small_delta_z: float, state: GainState):
        raise NotImplementedError(f"{type(self).__name__} is not plane resolved")


class NoGain(GainModel):
    """Passive fiber."""

    def fold(self, A_w, delta_z, state):
        return GainStep(None, state)
