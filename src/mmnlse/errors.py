"""Exception and warning types raised by the propagation engine.

Rejected adaptive steps never surface here; they are retried inside the
stepping controller. Everything below reaches the caller.
"""


class MMNLSEError(Exception):
    """Base class for all errors raised by mmnlse."""


class ConfigurationError(MMNLSEError, ValueError):
    """Inconsistent or malformed configuration detected before propagation."""


class NumericalDivergenceError(MMNLSEError, FloatingPointError):
    """The field turned NaN or the step size collapsed.

    Attributes:
        z (float): Position (m) at which the NaN was detected.
        delta_z (float): Step size (m) of the step that produced it.
    """

    def __init__(self, z: float, delta_z: float, detail: str = ""):
        self.z = z
        self.delta_z = delta_z
        reason = detail or "NaN field encountered"
        super().__init__(
            f"{reason} at z={z:.6g} m after a step of {delta_z:.3e} m, aborting. "
            "Reduce the step size or increase the temporal or frequency window."
        )


class IterationNotConvergedError(MMNLSEError, RuntimeError):
    """The MPA fixed-point iteration did not converge within its budget."""

    def __init__(self, n_iterations: int, residual: float):
        self.n_iterations = n_iterations
        self.residual = residual
        super().__init__(
            f"MPA step did not converge after {n_iterations} iterations "
            f"(last NRMSE {residual:.3e}), aborting."
        )


class PropagationCancelled(MMNLSEError):
    """Propagation was stopped on request.

    Attributes:
        z (float): Last accepted position (m) before the stop.
    """

    def __init__(self, z: float):
        self.z = z
        super().__init__(f"Propagation cancelled at z={z:.6g} m.")


class IterationNotConvergedWarning(RuntimeWarning):
    """The forward/backward gain iteration ran out of iterations."""


__all__ = [
    'MMNLSEError',
    'ConfigurationError',
    'NumericalDivergenceError',
    'IterationNotConvergedError',
    'PropagationCancelled',
    'IterationNotConvergedWarning',
]
