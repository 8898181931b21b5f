import jax.numpy as jnp
import numpy as np
import pytest

from mmnlse import Pulse, SimParams
from mmnlse import constants
from mmnlse.constants import C_um_ps
from mmnlse.utils import create_damped_freq_window


def test_grid_is_centred(grid) -> None:
    assert grid.n_points == 256
    assert np.isclose(grid.dt, 20.0 / 256)
    assert np.isclose(float(grid.t[grid.n_points // 2]), 0.0), "t = 0 should sit at index N/2"
    assert np.isclose(grid.center_freq_thz, C_um_ps / 1.03)
    assert np.isclose(grid.df_hz, 1.0 / (20.0e-12)), "Frequency bin should be 1 / time window"


def test_fft_round_trip(grid) -> None:
    pulse = Pulse.gaussian(100.0, 1.0, 2, grid, modal_coefficients=[1.0, 0.5j], chirp=3.0)
    back = Pulse.from_frequency(grid, pulse.field_w)
    assert np.allclose(back.field, pulse.field, atol=1e-12), "ifft(fft(A)) must give A back"


def test_gaussian_energy_and_modes(grid) -> None:
    pulse = Pulse.gaussian(1000.0, 1.0, 2, grid, modal_coefficients=[1.0, 1.0])
    expected_pj = 1000.0 * 1.0 * np.sqrt(np.pi / np.log(2)) / 2
    assert np.isclose(pulse.get_energy(), expected_pj, rtol=1e-6)
    assert np.allclose(pulse.get_modal_energies(), expected_pj / 2, rtol=1e-6)
    assert np.isclose(pulse.get_peak_power(), 1000.0, rtol=1e-6)
    assert pulse[1].n_modes == 1


def test_parseval_matches_pulse_energy(grid) -> None:
    pulse = Pulse.secant(500.0, 0.8, 1, grid)
    energy_from_spectrum = float(jnp.sum(jnp.abs(pulse.field_w) ** 2)) * grid.dt / grid.n_points
    assert np.isclose(energy_from_spectrum, pulse.get_energy(), rtol=1e-12)


def test_rejects_wrong_field_shape(grid) -> None:
    with pytest.raises(ValueError):
        Pulse(grid, jnp.zeros((1, 10)))
    with pytest.raises(ValueError):
        SimParams(jnp.zeros((2, 2)), 290.0)


def test_damped_window_shape() -> None:
    window = np.asarray(create_damped_freq_window(256))
    assert window[0] == 1.0, "Window must be flat at the carrier"
    assert np.all(window <= 1.0) and np.all(window > 0.0)
    edge = np.argmax(np.abs(np.fft.fftfreq(256)))
    assert np.isclose(window[edge], 1e-3, rtol=1e-6), "Window should reach 1e-3 at the edge"


def test_constants_module_exports_only_what_is_used() -> None:
    assert set(constants.__all__) == {
        'C_m_s', 'C_m_ps', 'C_um_ps', 'H_PLANCK', 'HBAR', 'K_BOLTZMANN',
        'PS_TO_S', 'THZ_TO_HZ', 'TOLERANCE_WAVELENGTH',
    }
    assert all(hasattr(constants, name) for name in constants.__all__)
    assert np.isclose(constants.HBAR * 2 * np.pi, constants.H_PLANCK)
