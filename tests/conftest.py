import jax
import numpy as np
import pytest

jax.config.update("jax_enable_x64", True)

from mmnlse import Fiber, SimParams  # noqa: E402

N = 256
TIME_WINDOW_PS = 20.0
WAVELENGTH_UM = 1.03
SR_SINGLE = 2e10  # 1/m^2, i.e. A_eff = 50 um^2


@pytest.fixture
def grid() -> SimParams:
    return SimParams.from_window(TIME_WINDOW_PS, N, WAVELENGTH_UM)


@pytest.fixture
def small_grid() -> SimParams:
    return SimParams.from_window(10.0, 64, WAVELENGTH_UM)


def two_mode_sr() -> np.ndarray:
    sr = np.zeros((2, 2, 2, 2))
    sr[0, 0, 0, 0] = 2.0e10
    sr[1, 1, 1, 1] = 1.5e10
    for idx in {(0, 0, 1, 1), (0, 1, 0, 1), (0, 1, 1, 0), (1, 0, 0, 1), (1, 0, 1, 0), (1, 1, 0, 0)}:
        sr[idx] = 0.7e10
    return sr


def random_sr(n_modes: int, seed: int = 0) -> np.ndarray:
    """Random tensor with the full permutation symmetry of an overlap integral."""
    rng = np.random.default_rng(seed)
    profiles = rng.normal(size=(n_modes, 40))
    return np.einsum('px,lx,mx,nx->plmn', profiles, profiles, profiles, profiles) * 1e8


@pytest.fixture
def single_mode_fiber():
    def build(length=0.1, beta2=0.02, n2=2.3e-20, **kwargs):
        betas = np.array([[0.0], [0.0], [beta2]])
        return Fiber(betas, np.full((1, 1, 1, 1), SR_SINGLE), length, n2=n2, **kwargs)
    return build
