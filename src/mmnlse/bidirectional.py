"""Forward/backward iteration for counter-pumped, bi-pumped and ASE runs.

The backward pump and backward ASE depend on the inversion along the whole
fiber, which in turn depends on the forward signal. The driver therefore
alternates passes over a fixed z grid until the output pulse energy and
the ASE powers stop changing:

* backward pass: carry the backward pump and ASE from z = L to 0 with the
  forward quantities of the previous pass held fixed;
* forward pass: propagate the pulse with the adaptive stepper, interval by
  interval, with the backward quantities of the last backward pass.

Counter- and bi-pumped runs start with a backward pass that ignores the
signal so that the first forward pass already sees a pumped fiber.
"""

import logging
import math
import time
import warnings

import jax.numpy as jnp
import numpy as np

from .errors import IterationNotConvergedWarning
from .gain import GainState
from .history import SegmentedHistory

logger = logging.getLogger(__name__)


def _relative_change_small(previous: float, current: float, tol: float) -> bool:
    if previous == 0:
        return True
    return abs((current - previous) / previous) < tol


class BidirectionalDriver:
    """Outer iteration around a configured Propagator.

    Args:
        propagator (Propagator): Supplies the stepper, gain model, grid and
            the adaptive ``advance`` loop.
    """

    def __init__(self, propagator):
        self.propagator = propagator
        self.gain = propagator.gain
        self.rate_config = propagator.rate_config
        self.sim_params = propagator.sim_params

        rate_config = self.rate_config
        if rate_config.num_steps_per_save is not None:
            self.steps_per_save = rate_config.num_steps_per_save
        else:
            self.steps_per_save = max(math.ceil(propagator.save_period / propagator.max_delta_z), 1)
        self.num_intervals = propagator.num_saves * self.steps_per_save
        self.grid_delta_z = propagator.fiber.length / self.num_intervals
        self.z_grid = np.arange(self.num_intervals + 1) * self.grid_delta_z
        self.z_grid[-1] = propagator.fiber.length

        n_modes = propagator.pulse.n_modes
        n_points = self.sim_params.n_points
        mpa_planes = propagator.config.mpa.M + 1 if propagator.step_method == 'MPA' else 1
        self.history = SegmentedHistory(
            self.num_intervals + 1,
            n_modes,
            n_points,
            include_ase=rate_config.include_ase,
            memory_limit_bytes=rate_config.memory_limit_bytes,
            mpa_planes=mpa_planes,
            n_transverse=self.gain.medium.n_total.shape[0],
            initial_pump_forward=rate_config.copump_power,
        )
        self._zero_ase = jnp.zeros((n_modes, n_points)) if rate_config.include_ase else None

    def _log(self, message, *args):
        level = logging.INFO if self.rate_config.verbose else logging.DEBUG
        logger.log(level, message, *args)

    def backward_pass(self, ignore_signal: bool = False, cancel=None) -> None:
        """Fill in backward pump and ASE at every grid point, from z = L down to 0."""
        history = self.history
        last = self.num_intervals
        history.write(last, pump_backward=self.rate_config.counterpump_power, ase_backward=self._zero_ase)
        for i in range(last - 1, -1, -1):
            if cancel is not None:
                self.propagator.check_cancel(cancel, float(self.z_grid[i + 1]))
            point = history.read(i + 1)
            state = GainState(point.pump_forward, point.pump_backward, point.ase_forward, point.ase_backward)
            state = self.gain.backward_step(point.field_w, state, self.grid_delta_z, ignore_signal=ignore_signal)
            history.write(i, pump_backward=state.pump_backward, ase_backward=state.ase_backward)

    def forward_pass(self, iteration: int, progress_bar=None, cancel=None):
        """Propagate the pulse through the grid and record the forward quantities.

        Returns:
            (run, saves): The finished RunState and the save-point snapshots.
        """
        propagator = self.propagator
        history = self.history
        start = history.read(0)
        run = propagator.new_run(GainState(
            self.rate_config.copump_power, start.pump_backward, self._zero_ase, start.ase_backward,
        ))
        history.write(0, field_w=run.field_w, pump_forward=run.gain_state.pump_forward,
                      ase_forward=run.gain_state.ase_forward)
        saves = [self._snapshot(run)]

        bar = propagator.make_progress_bar(f"Iteration {iteration}", progress_bar)
        try:
            for i in range(self.num_intervals):
                point = history.read(i)
                run.gain_state = run.gain_state._replace(
                    pump_backward=point.pump_backward, ase_backward=point.ase_backward,
                )
                propagator.advance(run, float(self.z_grid[i + 1]), bar, cancel)
                history.write(i + 1, field_w=run.field_w, pump_forward=run.gain_state.pump_forward,
                              ase_forward=run.gain_state.ase_forward)
                if (i + 1) % self.steps_per_save == 0:
                    end = history.read(i + 1)
                    run.gain_state = run.gain_state._replace(
                        pump_backward=end.pump_backward, ase_backward=end.ase_backward,
                    )
                    saves.append(self._snapshot(run))
        finally:
            if bar is not None:
                bar.close()
        return run, saves

    def _snapshot(self, run):
        return self.propagator._snapshot(run)

    def energies(self, run) -> dict:
        """Output pulse energy (nJ), forward ASE at z = L and backward ASE at z = 0 (W)."""
        dt = self.sim_params.dt
        n_points = self.sim_params.n_points
        pulse_nj = float(jnp.sum(jnp.abs(run.field_w) ** 2)) * dt / n_points * 1e-3
        ase_forward = ase_backward = 0.0
        if self.rate_config.include_ase:
            ase_forward = float(jnp.sum(self.history.read(self.num_intervals).ase_forward))
            ase_backward = float(jnp.sum(self.history.read(0).ase_backward))
        return {'pulse_nj': pulse_nj, 'ase_forward_w': ase_forward, 'ase_backward_w': ase_backward}

    def converged(self, previous: dict, current: dict) -> bool:
        tol = self.rate_config.tol
        return all(_relative_change_small(previous[key], current[key], tol) for key in current)

    def run(self, progress_bar=None, cancel=None):
        """Iterate backward and forward passes until the energies settle.

        Returns:
            PropagationResult: Result of the last forward pass, with the
            energy history in ``stats`` and ``converged`` set.
        """
        propagator = self.propagator
        rate_config = self.rate_config
        logger.info(
            "Propagating %d modes over %.4g m with %s, %s-pumped%s, %d z points in %d segment(s)",
            propagator.pulse.n_modes, propagator.fiber.length, propagator.step_method,
            rate_config.pump_direction, " with ASE" if rate_config.include_ase else "",
            self.num_intervals + 1, self.history.num_segments,
        )
        started = time.perf_counter()

        runs = []
        if rate_config.pump_direction != 'co':
            self.backward_pass(ignore_signal=True, cancel=cancel)
        run, saves = self.forward_pass(1, progress_bar, cancel)
        runs.append(run)
        energy = self.energies(run)
        energy_history = [energy]
        self._log(
            "Iteration 1: pulse %.6g nJ, forward ASE %.6g mW, backward ASE %.6g mW",
            energy['pulse_nj'], energy['ase_forward_w'] * 1e3, energy['ase_backward_w'] * 1e3,
        )

        converged = False
        for iteration in range(2, rate_config.max_iterations + 1):
            self.backward_pass(cancel=cancel)
            run, saves = self.forward_pass(iteration, progress_bar, cancel)
            runs.append(run)
            previous, energy = energy, self.energies(run)
            energy_history.append(energy)
            self._log(
                "Iteration %d: pulse %.6g nJ, forward ASE %.6g mW, backward ASE %.6g mW",
                iteration, energy['pulse_nj'], energy['ase_forward_w'] * 1e3, energy['ase_backward_w'] * 1e3,
            )
            if self.converged(previous, energy):
                converged = True
                break

        if not converged:
            message = (
                f"Gain iteration did not converge within {rate_config.max_iterations} iterations "
                f"(tol={rate_config.tol}); returning the last forward pass"
            )
            logger.warning(message)
            warnings.warn(message, IterationNotConvergedWarning, stacklevel=3)

        seconds = time.perf_counter() - started
        stats = propagator._run_stats(*runs)
        stats.update({
            'outer_iterations': len(runs),
            'energy_history': energy_history,
            'history_segments': self.history.num_segments,
            'history_swaps': self.history.swaps,
        })
        logger.info("Propagation finished in %.2f s after %d iteration(s)", seconds, len(runs))
        return propagator._build_result(saves, seconds, stats, converged=converged)
