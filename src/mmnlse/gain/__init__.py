from .base import GainModel, GainState, GainStep, NoGain
from .gaussian import GaussianGain
from .rate_equation import (
    GainMedium,
    RateEquationGain,
    cross_sections_from_table,
    n_total_from_absorption,
)

__all__ = [
    'GainModel',
    'GainState',
    'GainStep',
    'NoGain',
    'GaussianGain',
    'GainMedium',
    'RateEquationGain',
    'cross_sections_from_table',
    'n_total_from_absorption',
]
