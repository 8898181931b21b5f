"""Immutable run configuration.

Everything a propagation needs to know besides the fiber, the pulse and the
gain model lives here and is validated once, before any step is taken.
"""

import math
from dataclasses import dataclass, field, replace
from typing import Optional

from .errors import ConfigurationError

STEP_METHODS = ('RK4IP', 'MPA')
PARALLEL_STRATEGIES = ('vectorized', 'sequential')


@dataclass(frozen=True)
class AdaptiveStepConfig:
    """Adaptive step-size control.

    Attributes:
        threshold (float): Local error tolerance of one step.
        max_delta_z (float | None): Upper bound of the step (m). None means
            one tenth of the save period.
        initial_delta_z (float): First trial step (m); small to avoid blow-up.
    """
    threshold: float = 1e-3
    max_delta_z: Optional[float] = None
    initial_delta_z: float = 1e-6

    def __post_init__(self):
        if self.threshold <= 0:
            raise ConfigurationError(f"threshold must be positive, got {self.threshold}")
        if self.max_delta_z is not None and self.max_delta_z <= 0:
            raise ConfigurationError(f"max_delta_z must be positive, got {self.max_delta_z}")
        if self.initial_delta_z <= 0:
            raise ConfigurationError(f"initial_delta_z must be positive, got {self.initial_delta_z}")


@dataclass(frozen=True)
class MPAConfig:
    """Massively parallel algorithm settings.

    ``M`` is the number of parallel sub-planes per step. An odd value is
    rounded up to the next even number because the error estimate needs the
    half-way plane.
    """
    M: int = 10
    n_tot_max: int = 20
    n_tot_min: int = 2
    tol: float = 1e-6

    def __post_init__(self):
        if self.M < 1:
            raise ConfigurationError(f"MPA M must be at least 1, got {self.M}")
        if self.M % 2:
            object.__setattr__(self, 'M', self.M + 1)
        if self.n_tot_min < 1 or self.n_tot_max < self.n_tot_min:
            raise ConfigurationError(
                f"Need 1 <= n_tot_min <= n_tot_max, got {self.n_tot_min}, {self.n_tot_max}"
            )
        if self.tol <= 0:
            raise ConfigurationError(f"MPA tol must be positive, got {self.tol}")


@dataclass(frozen=True)
class SimConfig:
    """Propagation settings.

    Attributes:
        save_period (float): Distance between saved snapshots (m); 0 saves
            only the input and the output.
        step_method (str | None): 'RK4IP', 'MPA', or None to pick RK4IP for a
            single mode and MPA otherwise.
        scalar (bool): Scalar fields, or polarized fields with 2 entries per
            spatial mode.
        ellipticity (float): Polarization basis of polarized fields.
        raman_model (int): 0 none, 1 single vibration, 2 with anisotropic part.
        raman_sponrs (bool): Include spontaneous Raman scattering.
        pulse_centering (bool): Keep the pulse centred in the time window.
        include_shot_noise (bool): Add one photon per bin to the input field.
        parallel_strategy (str): 'vectorized' (jitted jax kernel) or
            'sequential' (numpy with precomputed partial sums).
        damped_window (bool): Apply the damped frequency window after each step.
        seed (int): Seed of all random draws in the run.
        progress_bar (bool): Show a tqdm bar in mm of fiber.
        adaptive (AdaptiveStepConfig): Step-size control.
        mpa (MPAConfig): MPA settings.
    """
    save_period: float = 0.0
    step_method: Optional[str] = None
    scalar: bool = True
    ellipticity: float = 0.0
    raman_model: int = 1
    raman_sponrs: bool = False
    pulse_centering: bool = True
    include_shot_noise: bool = False
    parallel_strategy: str = 'vectorized'
    damped_window: bool = True
    seed: int = 0
    progress_bar: bool = False
    adaptive: AdaptiveStepConfig = field(default_factory=AdaptiveStepConfig)
    mpa: MPAConfig = field(default_factory=MPAConfig)

    def __post_init__(self):
        if self.save_period < 0:
            raise ConfigurationError(f"save_period must be >= 0, got {self.save_period}")
        if self.step_method is not None and self.step_method not in STEP_METHODS:
            raise ConfigurationError(
                f"step_method must be one of {STEP_METHODS} or None, got '{self.step_method}'"
            )
        if self.raman_model not in (0, 1, 2):
            raise ConfigurationError(f"raman_model must be 0, 1 or 2, got {self.raman_model}")
        if self.raman_sponrs and self.raman_model == 0:
            raise ConfigurationError("raman_sponrs needs raman_model 1 or 2")
        if self.parallel_strategy not in PARALLEL_STRATEGIES:
            raise ConfigurationError(
                f"parallel_strategy must be one of {PARALLEL_STRATEGIES}, got '{self.parallel_strategy}'"
            )

    def resolve_step_method(self, n_modes: int) -> str:
        if self.step_method is not None:
            return self.step_method
        return 'RK4IP' if n_modes == 1 else 'MPA'

    def resolve_save_period(self, length: float) -> float:
        return length if self.save_period == 0 else self.save_period

    def num_saves(self, length: float) -> int:
        """Number of save intervals, checking that they tile the fiber.

        Raises:
            ConfigurationError: If the save period and length are incommensurate.
        """
        save_period = self.resolve_save_period(length)
        ratio = length / save_period
        n = round(ratio)
        if n < 1 or not math.isclose(ratio, n, rel_tol=0.0, abs_tol=4 * math.ulp(max(ratio, 1.0))):
            raise ConfigurationError(
                f"The save period is {save_period} m and the fiber length is {length} m, "
                "which are not commensurate"
            )
        return n

    def resolve_max_delta_z(self, length: float) -> float:
        if self.adaptive.max_delta_z is not None:
            return self.adaptive.max_delta_z
        return self.resolve_save_period(length) / 10

    def with_options(self, **changes) -> "SimConfig":
        return replace(self, **changes)


@dataclass(frozen=True)
class RateEquationConfig:
    """Controls of the rate-equation gain iteration.

    Attributes:
        copump_power (float): Forward pump power at z=0 (W).
        counterpump_power (float): Backward pump power at z=L (W).
        include_ase (bool): Track forward and backward ASE spectra.
        max_iterations (int): Budget of the forward/backward iteration.
        tol (float): Relative change of pulse energy and ASE power that ends it.
        memory_limit_bytes (int | None): Budget of the resident z-history;
            None keeps everything resident.
        export_n2 (bool): Store the upper-state population at save points.
        verbose (bool): Log per-iteration energies at INFO level.
        num_steps_per_save (int | None): Fixed z-grid intervals per save
            period for backward-coupled runs. None derives it from max_delta_z.
    """
    copump_power: float = 0.0
    counterpump_power: float = 0.0
    include_ase: bool = False
    max_iterations: int = 10
    tol: float = 1e-5
    memory_limit_bytes: Optional[int] = None
    export_n2: bool = True
    verbose: bool = False
    num_steps_per_save: Optional[int] = None

    def __post_init__(self):
        if self.copump_power < 0 or self.counterpump_power < 0:
            raise ConfigurationError("Pump powers must be non-negative")
        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.tol <= 0:
            raise ConfigurationError(f"tol must be positive, got {self.tol}")
        if self.memory_limit_bytes is not None and self.memory_limit_bytes <= 0:
            raise ConfigurationError("memory_limit_bytes must be positive")
        if self.num_steps_per_save is not None and self.num_steps_per_save < 1:
            raise ConfigurationError("num_steps_per_save must be >= 1")

    @property
    def pump_direction(self) -> str:
        """'co', 'counter' or 'bi'. Zero pump power counts as co-pumping."""
        if self.counterpump_power == 0:
            return 'co'
        if self.copump_power == 0:
            return 'counter'
        return 'bi'

    @property
    def needs_iteration(self) -> bool:
        return self.pump_direction != 'co' or self.include_ase
