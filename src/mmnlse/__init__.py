"""
mmnlse

A JAX-based adaptive-step solver for the Generalized Multimode Nonlinear
Schrödinger Equation with Kerr, Raman and rate-equation gain.
"""

__version__ = "0.1.0"

import jax

jax.config.update("jax_enable_x64", True)

from .config import AdaptiveStepConfig, MPAConfig, RateEquationConfig, SimConfig
from .errors import (
    ConfigurationError,
    IterationNotConvergedError,
    IterationNotConvergedWarning,
    MMNLSEError,
    NumericalDivergenceError,
    PropagationCancelled,
)
from .fiber import Fiber
from .gain import (
    GainMedium,
    GainState,
    GaussianGain,
    NoGain,
    RateEquationGain,
    cross_sections_from_table,
    n_total_from_absorption,
)
from .mode_coupling import RandomModeCoupling
from .pulse import Pulse
from .sim import SimParams
from .solver import Propagator
from .solver_result import PropagationResult

__all__ = [
    'AdaptiveStepConfig', 'MPAConfig', 'RateEquationConfig', 'SimConfig',
    'ConfigurationError', 'IterationNotConvergedError', 'IterationNotConvergedWarning',
    'MMNLSEError', 'NumericalDivergenceError', 'PropagationCancelled',
    'Fiber', 'GainMedium', 'GainState', 'GaussianGain', 'NoGain', 'RateEquationGain',
    'cross_sections_from_table', 'n_total_from_absorption',
    'RandomModeCoupling', 'Pulse', 'SimParams', 'Propagator', 'PropagationResult',
]
