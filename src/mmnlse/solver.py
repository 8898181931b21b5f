import logging
import math
import threading
import time
from collections import Counter
from typing import Callable, Optional, Union

import jax
import jax.numpy as jnp
import numpy as np
from tqdm.auto import tqdm

from .bidirectional import BidirectionalDriver
from .config import RateEquationConfig, SimConfig
from .errors import ConfigurationError, NumericalDivergenceError, PropagationCancelled
from .fiber import Fiber
from .gain import GainModel, GainState, NoGain, RateEquationGain
from .mode_coupling import RandomModeCoupling
from .nonlinear import make_nonlinear_evaluator
from .pulse import Pulse
from .raman import SpontaneousRaman, raman_response
from .solver_result import PropagationResult
from .steppers import MPAStepper, make_stepper
from .tensors import calc_srsk
from .utils.boundary import apply_freq_window, create_damped_freq_window
from .utils.common import field_has_nan
from .utils.noise import add_shot_noise_to_field

logger = logging.getLogger(__name__)

# Smallest step the controller may shrink to before giving up (m)
MIN_DELTA_Z = 1e-12
# Relative tolerance for reaching a target z
Z_TOLERANCE = 1e-12

PROGRESS_BAR_FORMAT = '{l_bar}{bar}| {n:.3f}/{total:.3f} {unit} [{elapsed}<{remaining}, {rate_fmt}]'

CancelToken = Union[Callable[[], bool], threading.Event, None]


class RunState:
    """Mutable state of one pass along the fiber.

    Attributes:
        field_w: Field spectrum at ``z``, shape (n_modes, n_points).
        a5: Nonlinear term at ``z`` reused by RK4IP, or None.
        z: Position (m).
        delta_z: Size of the next attempted step (m).
        last_delta_z: Size of the last accepted step (m).
        t_delay: Accumulated pulse-centering delay (ps).
        gain_state: Pump and ASE powers at ``z``.
        n2: Upper-state population of the last step, or None.
    """

    def __init__(self, field_w, delta_z: float, gain_state: GainState):
        self.field_w = field_w
        self.a5 = None
        self.z = 0.0
        self.delta_z = delta_z
        self.last_delta_z = 0.0
        self.t_delay = 0.0
        self.gain_state = gain_state
        self.n2 = None
        self.num_steps = 0
        self.rejected_steps = 0
        self.mpa_iterations = Counter()


def _is_cancelled(cancel) -> bool:
    if cancel is None:
        return False
    if hasattr(cancel, 'is_set'):
        return cancel.is_set()
    return bool(cancel())


def beat_length_limit(field_w: jnp.ndarray, dispersion: jnp.ndarray) -> float:
    """Largest step that still resolves the beating of the lit part of the spectrum.

    The propagation constants Im(D) are weighted by the square root of each
    mode's normalized spectral intensity, so frequencies and modes without
    light do not count. The limit is a quarter of 2π over their spread.
    """
    spectrum = jnp.abs(field_w) ** 2
    peak = jnp.max(spectrum, axis=-1)
    lit = np.asarray(peak > 0)
    if not lit.any():
        return math.inf
    weights = jnp.sqrt(spectrum[lit] / peak[lit][:, jnp.newaxis])
    effective = jnp.imag(dispersion)[lit] * weights
    spread = float(jnp.max(effective) - jnp.min(effective))
    if spread <= 0:
        return math.inf
    return 2 * math.pi / spread / 4


class Propagator:
    """Adaptive-step GMMNLSE propagation through one fiber.

    Everything that does not change along the fiber is resolved once here:
    dispersion, Raman kernels, sparse overlap tensors, the nonlinear
    evaluator, the stepper and the gain model.

    Args:
        fiber (Fiber): Dispersion, overlap tensor and length.
        pulse (Pulse): Input field.
        config (SimConfig): Propagation settings. Defaults to SimConfig().
        gain (GainModel | None): NoGain, GaussianGain or RateEquationGain.
        rate_config (RateEquationConfig | None): Iteration controls for
            rate-equation gain. Defaults to the gain model's own config.
        mode_coupling (RandomModeCoupling | None): Random linear mode coupling.

    Raises:
        ConfigurationError: If the inputs are inconsistent.
    """

    def __init__(
        self,
        fiber: Fiber,
        pulse: Pulse,
        config: Optional[SimConfig] = None,
        gain: Optional[GainModel] = None,
        rate_config: Optional[RateEquationConfig] = None,
        mode_coupling: Optional[RandomModeCoupling] = None,
    ):
        self.fiber = fiber
        self.pulse = pulse
        self.config = config if config is not None else SimConfig()
        self.sim_params = pulse.sim_params
        n_modes = pulse.n_modes
        config = self.config

        self.save_period = config.resolve_save_period(fiber.length)
        self.num_saves = config.num_saves(fiber.length)
        self.max_delta_z = config.resolve_max_delta_z(fiber.length)
        self.step_method = config.resolve_step_method(n_modes)

        self.dispersion = fiber.get_dispersion_operator(
            self.sim_params.omega_relative, n_modes, config.scalar
        )
        self.raman = raman_response(
            config.raman_model, self.sim_params.n_points, self.sim_params.dt,
            fiber.material, config.scalar,
        )
        self.tensors = calc_srsk(fiber.sr_tensor, self.raman, config.scalar, config.ellipticity)
        self.evaluator = make_nonlinear_evaluator(
            config.parallel_strategy,
            self.tensors,
            self.raman,
            fiber.get_nonlinear_prefactor(self.sim_params.omega_abs),
        )

        self.gain = gain if gain is not None else NoGain()
        if isinstance(self.gain, RateEquationGain):
            if self.gain.medium.n_modes != n_modes:
                raise ConfigurationError(
                    f"Gain medium describes {self.gain.medium.n_modes} modes; the field has {n_modes}"
                )
            if rate_config is None:
                rate_config = self.gain.config
            elif rate_config.include_ase != self.gain.include_ase:
                raise ConfigurationError("rate_config.include_ase disagrees with the gain model")
        elif rate_config is not None:
            raise ConfigurationError("rate_config given without a RateEquationGain model")
        self.rate_config = rate_config

        if mode_coupling is not None and mode_coupling.n_modes != n_modes:
            raise ConfigurationError(
                f"Mode coupling built for {mode_coupling.n_modes} modes; the field has {n_modes}"
            )
        self.mode_coupling = mode_coupling

        self.stepper = make_stepper(
            self.step_method,
            self.evaluator,
            self.dispersion,
            config.adaptive.threshold,
            config.mpa,
            self.gain,
        )
        self.freq_window = create_damped_freq_window(self.sim_params.n_points) if config.damped_window else None

        self._key = jax.random.PRNGKey(config.seed)
        self.sponrs = None
        if config.raman_sponrs:
            self.sponrs = SpontaneousRaman(self.sim_params, self.raman, float(fiber.sr_tensor[0, 0, 0, 0]))

        field_t = pulse.field
        if config.include_shot_noise:
            field_t = add_shot_noise_to_field(field_t, self.sim_params, config.seed)
        self.initial_field_t = field_t

        logger.debug(
            "Propagator ready: %d modes, %s, max_delta_z=%.3g m, %d save intervals",
            n_modes, self.step_method, self.max_delta_z, self.num_saves,
        )

    @property
    def needs_iteration(self) -> bool:
        return self.rate_config is not None and self.rate_config.needs_iteration

    def new_run(self, gain_state: Optional[GainState] = None) -> RunState:
        """A fresh pass starting at z = 0 with the (centred) input field."""
        field_w = jnp.fft.fft(self.initial_field_t, axis=-1)
        state = RunState(
            field_w,
            self.config.adaptive.initial_delta_z,
            gain_state if gain_state is not None else self.gain.initial_state(),
        )
        if self.config.pulse_centering:
            state.field_w, _, shift = self.center_pulse(field_w, None)
            state.t_delay = shift * self.sim_params.dt
        return state

    def center_pulse(self, field_w, a5):
        """Roll the field (and a5) so that its temporal centroid sits at the grid centre.

        Returns:
            (field_w, a5, shift): Shifted arrays and the shift in time points.
        """
        n_points = self.sim_params.n_points
        field_t = jnp.fft.ifft(field_w, axis=-1)
        intensity = jnp.abs(field_t) ** 2
        total = float(jnp.sum(intensity))
        if total == 0 or math.isnan(total):
            return field_w, a5, 0
        index = jnp.arange(-(n_points // 2), (n_points - 1) // 2 + 1)
        shift = math.floor(float(jnp.sum(index * intensity)) / total)
        if shift == 0:
            return field_w, a5, 0
        field_w = jnp.fft.fft(jnp.roll(field_t, -shift, axis=-1), axis=-1)
        if a5 is not None:
            a5 = jnp.fft.fft(jnp.roll(jnp.fft.ifft(a5, axis=-1), -shift, axis=-1), axis=-1)
        return field_w, a5, shift

    @staticmethod
    def check_cancel(cancel: CancelToken, z: float) -> None:
        if _is_cancelled(cancel):
            logger.info("Propagation cancelled at z=%.6g m", z)
            raise PropagationCancelled(z)

    def _sponrs_realization(self, step_index: int):
        if self.sponrs is None:
            return None
        return self.sponrs.realize_for_step(self._key, step_index)

    def make_progress_bar(self, desc: str, enabled: Optional[bool] = None):
        if enabled is None:
            enabled = self.config.progress_bar
        if not enabled:
            return None
        return tqdm(
            total=self.fiber.length * 1000.0,
            unit="mm",
            desc=desc,
            bar_format=PROGRESS_BAR_FORMAT,
        )

    def advance(self, run: RunState, z_target: float, progress_bar=None, cancel: CancelToken = None) -> None:
        """Take adaptive steps until ``run`` reaches ``z_target``.

        A rejected step is retried from the last accepted field with the
        smaller recommended size. An accepted step is windowed, checked for
        NaN, re-centred and mode-mixed before z advances. The next step is
        limited by the error control, ``max_delta_z`` and the beat length.

        Raises:
            NumericalDivergenceError: On a NaN field or a step below MIN_DELTA_Z.
            PropagationCancelled: When ``cancel`` fires.
            IterationNotConvergedError: When an MPA step does not settle.
        """
        tolerance = Z_TOLERANCE * max(abs(z_target), 1.0)
        while z_target - run.z > tolerance:
            self.check_cancel(cancel, run.z)

            sponrs_gamma = self._sponrs_realization(run.num_steps)
            while True:
                delta_z = min(run.delta_z, z_target - run.z)
                result = self.stepper.step(run.field_w, delta_z, run.a5, run.gain_state, sponrs_gamma)
                if isinstance(self.stepper, MPAStepper):
                    run.mpa_iterations[result.iterations] += 1
                if result.success:
                    break
                run.rejected_steps += 1
                logger.debug(
                    "Step rejected at z=%.6g m: delta_z=%.3g m, error=%.3g", run.z, delta_z, result.error
                )
                run.delta_z = result.opt_delta_z
                if run.delta_z < MIN_DELTA_Z:
                    raise NumericalDivergenceError(run.z, run.delta_z, "Step size collapsed")

            field_w = apply_freq_window(result.field_w, self.freq_window)
            if field_has_nan(field_w):
                raise NumericalDivergenceError(run.z, delta_z)

            a5 = result.a5
            if self.config.pulse_centering:
                field_w, a5, shift = self.center_pulse(field_w, a5)
                run.t_delay += shift * self.sim_params.dt
            if self.mode_coupling is not None:
                field_w = self.mode_coupling.apply(field_w, delta_z)
                a5 = None

            run.field_w = field_w
            run.a5 = a5
            run.gain_state = result.gain_state
            run.n2 = result.n2
            run.z += delta_z
            run.last_delta_z = delta_z
            run.num_steps += 1
            if progress_bar is not None:
                progress_bar.update(delta_z * 1000.0)

            beat_limit = beat_length_limit(field_w, self.dispersion)
            if self.step_method == 'MPA':
                beat_limit *= self.config.mpa.M
            run.delta_z = min(result.opt_delta_z, self.max_delta_z, beat_limit)

        run.z = z_target

    def population_fraction(self, field_w, gain_state: GainState):
        """N2 / max(N_total) on the gain medium's grid, or None without rate-equation gain."""
        if not isinstance(self.gain, RateEquationGain):
            return None
        medium = self.gain.medium
        n2 = self.gain.inversion(field_w, gain_state)
        return medium.n2_to_grid(n2) / medium.n_total_max

    def solve(self, progress_bar: Optional[bool] = None, cancel: CancelToken = None) -> PropagationResult:
        """Propagate the pulse to the end of the fiber.

        Args:
            progress_bar: Show a tqdm bar; None uses ``config.progress_bar``.
            cancel: ``threading.Event`` or zero-argument callable polled once
                per step; a true value aborts with PropagationCancelled.

        Returns:
            PropagationResult: Fields and gain quantities at every save point.
        """
        if self.needs_iteration:
            return BidirectionalDriver(self).run(progress_bar=progress_bar, cancel=cancel)

        logger.info(
            "Propagating %d modes over %.4g m with %s",
            self.pulse.n_modes, self.fiber.length, self.step_method,
        )
        started = time.perf_counter()
        run = self.new_run()
        saves = [self._snapshot(run)]

        bar = self.make_progress_bar(f"{self.step_method} Progress", progress_bar)
        try:
            for i in range(1, self.num_saves + 1):
                z_target = self.fiber.length if i == self.num_saves else i * self.save_period
                self.advance(run, z_target, bar, cancel)
                saves.append(self._snapshot(run))
        finally:
            if bar is not None:
                bar.close()

        seconds = time.perf_counter() - started
        logger.info("Propagation finished in %.2f s (%d steps, %d rejected)",
                    seconds, run.num_steps, run.rejected_steps)
        return self._build_result(saves, seconds, self._run_stats(run))

    def _run_stats(self, *runs: RunState) -> dict:
        mpa_iterations = Counter()
        for run in runs:
            mpa_iterations.update(run.mpa_iterations)
        return {
            'num_steps': sum(run.num_steps for run in runs),
            'rejected_steps': sum(run.rejected_steps for run in runs),
            'mpa_iterations': dict(sorted(mpa_iterations.items())),
            'step_method': self.step_method,
        }

    def _snapshot(self, run: RunState) -> dict:
        """Quantities recorded at a save point."""
        state = run.gain_state
        return {
            'z': run.z,
            'delta_z': run.last_delta_z,
            'field_t': np.asarray(jnp.fft.ifft(run.field_w, axis=-1)),
            't_delay': run.t_delay,
            'pump_forward': float(state.pump_forward),
            'pump_backward': float(state.pump_backward),
            'ase_forward': None if state.ase_forward is None else np.asarray(state.ase_forward),
            'ase_backward': None if state.ase_backward is None else np.asarray(state.ase_backward),
            'n2': self.population_fraction(run.field_w, state),
        }

    def _build_result(self, saves, seconds: float, stats: dict, converged: bool = True) -> PropagationResult:
        def stacked(name, shift=False):
            if saves[0][name] is None:
                return None
            values = np.stack([save[name] for save in saves])
            return np.fft.fftshift(values, axes=-1) if shift else values

        rate_gain = isinstance(self.gain, RateEquationGain)
        export_n2 = rate_gain and self.rate_config is not None and self.rate_config.export_n2
        stats['converged'] = converged
        return PropagationResult(
            self.sim_params,
            z=np.array([save['z'] for save in saves]),
            delta_z=np.array([save['delta_z'] for save in saves]),
            fields=stacked('field_t'),
            t_delay=np.array([save['t_delay'] for save in saves]),
            stats=stats,
            seconds=seconds,
            pump_forward=stacked('pump_forward') if rate_gain else None,
            pump_backward=stacked('pump_backward') if rate_gain else None,
            ase_forward=stacked('ase_forward', shift=True),
            ase_backward=stacked('ase_backward', shift=True),
            n2=stacked('n2') if export_n2 else None,
            converged=converged,
        )
