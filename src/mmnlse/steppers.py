"""Adaptive single-step integrators: RK4IP and the massively parallel algorithm."""

import logging
import math
from typing import NamedTuple, Optional

import jax.numpy as jnp
import numpy as np

from .config import MPAConfig
from .errors import IterationNotConvergedError
from .gain import GainModel, GainState, NoGain
from .nonlinear import NonlinearEvaluator

logger = logging.getLogger(__name__)


class StepResult(NamedTuple):
    """Outcome of one attempted step.

    Attributes:
        field_w: Field spectrum at z + Δz, shape (n_modes, n_points).
        a5: Nonlinear term at z + Δz, reusable as the first stage of the next
            RK4IP step; None for MPA.
        gain_state: Gain state at z + Δz.
        n2: Upper-state population of the step, or None.
        opt_delta_z: Recommended size of the next attempt (m).
        success: Whether the local error met the threshold.
        error: Local error estimate.
        iterations: Fixed-point iterations used (1 for RK4IP).
    """
    field_w: jnp.ndarray
    a5: Optional[jnp.ndarray]
    gain_state: GainState
    n2: Optional[jnp.ndarray]
    opt_delta_z: float
    success: bool
    error: float
    iterations: int


def _step_control(error: float, threshold: float, delta_z: float, order: float):
    """(opt_delta_z, success) from a local error estimate.

    A NaN error halves the step and rejects it. Otherwise the step is scaled
    by 0.8 (threshold / error)^(1/order), clamped to [0.5, 2].
    """
    if math.isnan(error):
        return 0.5 * delta_z, False
    if error == 0:
        factor = 2.0
    else:
        factor = min(max(0.8 * (threshold / error) ** (1.0 / order), 0.5), 2.0)
    return factor * delta_z, error < threshold


def weighted_nrmse(estimate: jnp.ndarray, reference: jnp.ndarray) -> float:
    """Energy-weighted normalized RMS difference over modes.

    Each mode contributes sqrt(Σ|x - ref|² / Σ|x|²) weighted by its share of
    the total energy; empty modes contribute zero.
    """
    energy = jnp.sum(jnp.abs(estimate) ** 2, axis=-1)
    weight = energy / jnp.sum(energy)
    nrmse = jnp.sqrt(jnp.sum(jnp.abs(estimate - reference) ** 2, axis=-1) / energy) * weight
    return float(jnp.sum(jnp.nan_to_num(nrmse, nan=0.0)))


class RK4IPStepper:
    """Fourth-order Runge-Kutta in the interaction picture with an embedded error.

    Args:
        evaluator (NonlinearEvaluator): Returns the nonlinear dA_w/dz.
        dispersion (jnp.ndarray): D(ω), shape (n_modes, n_points).
        threshold (float): Local error tolerance.
        gain (GainModel): Gain folded into the linear operator.
    """

    order = 4

    def __init__(
        self,
        evaluator: NonlinearEvaluator,
        dispersion: jnp.ndarray,
        threshold: float,
        gain: Optional[GainModel] = None,
    ):
        self.evaluator = evaluator
        self.dispersion = dispersion
        self.threshold = threshold
        self.gain = gain if gain is not None else NoGain()

    def step(
        self,
        A0_w: jnp.ndarray,
        delta_z: float,
        a5_prev: Optional[jnp.ndarray],
        gain_state: GainState,
        sponrs_gamma: Optional[jnp.ndarray] = None,
    ) -> StepResult:
        """Advance the field by ``delta_z``.

        With h = Δz and the linear operator L = D + g/2 (g the power gain),
        the step reads

            A_I = exp(L h/2) A0
            a1  = exp(L h/2) N(A0)
            a2  = N(A_I + a1 h/2)
            a3  = N(A_I + a2 h/2)
            a4  = N(exp(L h/2) (A_I + a3 h))
            A1  = exp(L h/2) (A_I + (a1 + 2 a2 + 2 a3) h/6) + a4 h/6

        N(A0) equals the previous step's a5 = N(A1), so it is reused when
        given. The embedded error is |a4 - a5| h / 10 relative to A1, taken
        per mode and reported for the worst mode with nonzero energy.

        Args:
            A0_w: Field spectrum at z, shape (n_modes, n_points).
            delta_z: Step size (m).
            a5_prev: N(A0) from the previous accepted step, or None.
            gain_state: Gain state at z.
            sponrs_gamma: Spontaneous Raman realization for this step.

        Returns:
            StepResult: The attempted step.
        """
        gain_step = self.gain.fold(A0_w, delta_z, gain_state)
        exponent = self.dispersion * (delta_z / 2)
        if gain_step.g is not None:
            exponent = exponent + gain_step.g * (delta_z / 4)
        expDG = jnp.exp(exponent)

        def nonlinear(A_w):
            return self.evaluator(A_w, sponrs_gamma)

        if a5_prev is None:
            a5_prev = nonlinear(A0_w)

        A_IP = expDG * A0_w
        a1 = expDG * a5_prev
        a2 = nonlinear(A_IP + a1 * (delta_z / 2))
        a3 = nonlinear(A_IP + a2 * (delta_z / 2))
        a4 = nonlinear(expDG * (A_IP + a3 * delta_z))
        A1_w = expDG * (A_IP + (a1 + 2 * a2 + 2 * a3) * (delta_z / 6)) + a4 * (delta_z / 6)
        a5 = nonlinear(A1_w)

        error = self.local_error(a4, a5, A1_w, delta_z)
        opt_delta_z, success = _step_control(error, self.threshold, delta_z, self.order)
        return StepResult(A1_w, a5, gain_step.state, gain_step.n2, opt_delta_z, success, error, 1)

    @staticmethod
    def local_error(a4, a5, A1_w, delta_z) -> float:
        norm = jnp.sum(jnp.abs(A1_w) ** 2, axis=-1)
        diff = jnp.sum(jnp.abs((a4 - a5) * (delta_z / 10)) ** 2, axis=-1)
        per_mode = jnp.sqrt(diff / jnp.where(norm > 0, norm, 1.0))
        if bool(jnp.any(jnp.isnan(per_mode))):
            return math.nan
        per_mode = jnp.where(norm > 0, per_mode, 0.0)
        return float(jnp.max(per_mode))


def mpa_coefficients(M: int) -> np.ndarray:
    """Closed Newton-Cotes weights for integrating over 1..M sub-steps.

    Row ``i`` holds the weights w_j (j = 0..i+1, rest zero) with
    ∫_0^{i+1} f(s) ds ≈ Σ_j w_j f(j) exact for polynomials of degree i+1.

    Returns:
        np.ndarray: Shape (M, M + 1).
    """
    coefficients = np.zeros((M, M + 1))
    for n in range(1, M + 1):
        nodes = np.arange(n + 1, dtype=np.float64)
        powers = np.arange(n + 1)
        vandermonde = nodes[np.newaxis, :] ** powers[:, np.newaxis]
        moments = n ** (powers + 1.0) / (powers + 1.0)
        coefficients[n - 1, :n + 1] = np.linalg.solve(vandermonde, moments)
    return coefficients


class MPAStepper:
    """Massively parallel algorithm.

    The step Δz is divided into M sub-planes that are solved together by a
    fixed-point iteration of the integral form of the interaction-picture
    equation,

        ψ_m = ψ_0 + Σ_j c_mj exp(-L j δz) δz N(exp(L j δz) ψ_j),   δz = Δz/M,

    so that every iteration evaluates the nonlinearity at all M+1 planes in
    one batched call. Convergence is measured on the half-resolution estimate
    of the last plane, which also provides the local error.

    Args:
        evaluator (NonlinearEvaluator): Batched nonlinear term.
        dispersion (jnp.ndarray): D(ω), shape (n_modes, n_points).
        threshold (float): Local error tolerance.
        mpa (MPAConfig): Number of planes and iteration controls.
        gain (GainModel): Folded into D unless it is plane resolved, in which
            case its g/2·A term joins the nonlinear term at every plane.
    """

    order = 3

    def __init__(
        self,
        evaluator: NonlinearEvaluator,
        dispersion: jnp.ndarray,
        threshold: float,
        mpa: MPAConfig,
        gain: Optional[GainModel] = None,
    ):
        self.evaluator = evaluator
        self.dispersion = dispersion
        self.threshold = threshold
        self.mpa = mpa
        self.gain = gain if gain is not None else NoGain()
        self.coefficients = jnp.asarray(mpa_coefficients(mpa.M))
        self._plane_index = jnp.arange(mpa.M + 1, dtype=jnp.float64)[:, jnp.newaxis, jnp.newaxis]

    def step(
        self,
        A0_w: jnp.ndarray,
        delta_z: float,
        a5_prev: Optional[jnp.ndarray],
        gain_state: GainState,
        sponrs_gamma: Optional[jnp.ndarray] = None,
    ) -> StepResult:
        """Advance the field by ``delta_z``; ``a5_prev`` is unused.

        Raises:
            IterationNotConvergedError: If the planes do not settle within
                ``n_tot_max`` iterations.
        """
        M = self.mpa.M
        small_dz = delta_z / M
        plane_resolved = self.gain.plane_resolved

        linear = self.dispersion
        end_state, n2 = gain_state, None
        if not plane_resolved:
            gain_step = self.gain.fold(A0_w, delta_z, gain_state)
            end_state, n2 = gain_step.state, gain_step.n2
            if gain_step.g is not None:
                linear = linear + gain_step.g / 2

        D_pos = jnp.exp(linear * small_dz * self._plane_index)
        D_neg = jnp.exp(-linear * small_dz * self._plane_index)

        psi = jnp.broadcast_to(A0_w, (M + 1,) + A0_w.shape)
        half_coefficients = 2 * self.coefficients[M // 2 - 1, :M // 2 + 1]
        last_half = psi[M]
        n_it = 0
        while True:
            n_it += 1
            A_w = D_pos * psi
            slope = self.evaluator(A_w, sponrs_gamma)
            if plane_resolved:
                g_planes, end_state, n2 = self.gain.per_plane(A_w, small_dz, gain_state)
                slope = slope + g_planes / 2 * A_w
            increments = D_neg * (small_dz * slope)

            psi = jnp.concatenate([
                psi[:1],
                psi[0] + jnp.tensordot(self.coefficients, increments, axes=1),
            ])
            half = psi[0] + jnp.tensordot(half_coefficients, increments[0::2], axes=1)

            residual = weighted_nrmse(half, last_half)
            last_half = half
            if n_it >= self.mpa.n_tot_min and residual < self.mpa.tol:
                break
            if n_it >= self.mpa.n_tot_max:
                raise IterationNotConvergedError(n_it, residual)

        A1_w = D_pos[M] * psi[M]
        error = weighted_nrmse(half, psi[M])
        opt_delta_z, success = _step_control(error, self.threshold, delta_z, self.order)
        return StepResult(A1_w, None, end_state, n2, opt_delta_z, success, error, n_it)


def make_stepper(method: str, evaluator, dispersion, threshold, mpa: MPAConfig, gain=None):
    if method == 'RK4IP':
        return RK4IPStepper(evaluator, dispersion, threshold, gain)
    logger.debug("MPA with M=%d planes", mpa.M)
    return MPAStepper(evaluator, dispersion, threshold, mpa, gain)
