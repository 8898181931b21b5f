import math

import jax.numpy as jnp
import numpy as np
import pytest

from mmnlse import (
    ConfigurationError,
    GainMedium,
    GainState,
    GaussianGain,
    IterationNotConvergedWarning,
    MPAConfig,
    Propagator,
    Pulse,
    RateEquationConfig,
    RateEquationGain,
    SimConfig,
    SimParams,
    cross_sections_from_table,
    n_total_from_absorption,
)
from mmnlse.constants import C_m_s, H_PLANCK

SIGMA_A = 6e-27
SIGMA_E = 3e-25
SIGMA_PUMP = 2.6e-24
LIFETIME = 1e-3
N_TOTAL = 1e25
CORE_AREA = 2.8e-11
REP_RATE = 10e6
PUMP_NM = 976.0


def _yb_medium(sim_params, signal_overlap=1.0, pump_overlap=1.0, pump_emission=SIGMA_PUMP):
    n = sim_params.n_points
    return GainMedium.single_mode(
        absorption=jnp.full(n, SIGMA_A),
        emission=jnp.full(n, SIGMA_E),
        pump_wavelength_nm=PUMP_NM,
        pump_absorption=SIGMA_PUMP,
        pump_emission=pump_emission,
        lifetime_s=LIFETIME,
        n_total=N_TOTAL,
        core_area_m2=CORE_AREA,
        repetition_rate_hz=REP_RATE,
        signal_overlap=signal_overlap,
        pump_overlap=pump_overlap,
    )


@pytest.mark.parametrize("step_method", ["RK4IP", "MPA"])
def test_flat_gain_amplifies_by_small_signal_gain(small_grid, single_mode_fiber, step_method) -> None:
    fiber = single_mode_fiber(length=0.5, n2=0.0)
    pulse = Pulse.gaussian(10.0, 0.5, 1, small_grid)
    gain = GaussianGain(small_grid, small_signal_gain_db=10.0, length=0.5)
    config = SimConfig(step_method=step_method, raman_model=0, damped_window=False, mpa=MPAConfig(M=4))
    result = Propagator(fiber, pulse, config, gain=gain).solve()

    energies = result.energies_nj()
    assert np.isclose(energies[-1] / energies[0], 10.0, rtol=1e-9), "10 dB over the full length"
    assert result.pump_forward is None and result.n2 is None


def test_gaussian_gain_saturates_and_has_a_bandwidth(small_grid, single_mode_fiber) -> None:
    fiber = single_mode_fiber(length=0.5, n2=0.0)
    pulse = Pulse.gaussian(10.0, 0.5, 1, small_grid)
    gain = GaussianGain(small_grid, 10.0, 0.5, saturation_energy_nj=pulse.get_energy_nj())
    result = Propagator(fiber, pulse, SimConfig(raman_model=0, damped_window=False), gain=gain).solve()
    ratio = result.energies_nj()[-1] / result.energies_nj()[0]
    assert 1.0 < ratio < 10.0, "A saturated amplifier gains less than its small-signal value"

    shaped = GaussianGain(small_grid, 10.0, 0.5, fwhm_nm=5.0)
    assert np.isclose(float(shaped.spectrum[0]), 1.0), "The gain peaks at the grid centre by default"
    assert float(jnp.min(shaped.spectrum)) < 0.5

    with pytest.raises(ConfigurationError):
        GaussianGain(small_grid, 10.0, 0.0)


def test_fold_matches_hand_computed_rate_equations(small_grid) -> None:
    medium = _yb_medium(small_grid, signal_overlap=0.8, pump_overlap=0.5)
    gain = RateEquationGain(medium, RateEquationConfig(copump_power=0.3), small_grid)
    A_w = Pulse.gaussian(100.0, 0.5, 1, small_grid).field_w
    state = GainState(pump_forward=0.3, pump_backward=0.1)
    step = gain.fold(A_w, 0.01, state)

    freqs_hz = np.asarray(small_grid.freqs_abs_thz) * 1e12
    power_bins = np.abs(np.asarray(A_w[0])) ** 2 * small_grid.dt * 1e-12 * REP_RATE / small_grid.n_points
    photon_flux = np.sum(power_bins / (H_PLANCK * freqs_hz))
    pump_flux = 0.4 / (H_PLANCK * C_m_s / (PUMP_NM * 1e-9))
    I_s, I_p = 0.8 / CORE_AREA, 0.5 / CORE_AREA
    W_a = SIGMA_A * photon_flux * I_s + SIGMA_PUMP * pump_flux * I_p
    W_e = SIGMA_E * photon_flux * I_s + SIGMA_PUMP * pump_flux * I_p
    n2 = N_TOTAL * W_a / (W_a + W_e + 1 / LIFETIME)

    assert np.isclose(float(step.n2[0]), n2, rtol=1e-10)
    expected_g = 0.8 * ((SIGMA_A + SIGMA_E) * n2 - SIGMA_A * N_TOTAL)
    assert step.g.shape == (1, small_grid.n_points)
    assert np.allclose(step.g, expected_g, rtol=1e-10)
    g_pump = 0.5 * (2 * SIGMA_PUMP * n2 - SIGMA_PUMP * N_TOTAL)
    assert np.isclose(float(step.state.pump_forward), 0.3 * math.exp(g_pump * 0.01), rtol=1e-10)
    assert step.state.pump_backward == 0.1, "fold only advances forward quantities"


def test_weak_pump_sees_small_signal_absorption(small_grid) -> None:
    medium = _yb_medium(small_grid, pump_overlap=0.02)
    gain = RateEquationGain(medium, RateEquationConfig(copump_power=1e-9), small_grid)
    dark = jnp.zeros((1, small_grid.n_points), dtype=jnp.complex128)
    delta_z = 0.05
    expected = 1e-9 * math.exp(-SIGMA_PUMP * 0.02 * N_TOTAL * delta_z)

    forward = gain.fold(dark, delta_z, gain.initial_state()).state
    assert np.isclose(float(forward.pump_forward), expected, rtol=1e-5)

    backward = gain.backward_step(dark, GainState(0.0, 1e-9), delta_z, ignore_signal=True)
    assert np.isclose(float(backward.pump_backward), expected, rtol=1e-5)


def test_per_plane_starts_from_fold(small_grid) -> None:
    gain = RateEquationGain(_yb_medium(small_grid), RateEquationConfig(copump_power=1.0), small_grid)
    A_w = Pulse.gaussian(100.0, 0.5, 1, small_grid).field_w
    planes = jnp.stack([A_w, A_w * 1.1, A_w * 1.2])
    g_planes, end_state, n2 = gain.per_plane(planes, 0.01, gain.initial_state())

    assert g_planes.shape == (3, 1, small_grid.n_points)
    assert np.allclose(g_planes[0], gain.fold(A_w, 0.01, gain.initial_state()).g)
    assert float(end_state.pump_forward) < 1.0, "The pump is absorbed across the planes"
    assert np.allclose(n2, gain.inversion(planes[-1], end_state))


def test_cross_section_table_and_dopant_density(small_grid) -> None:
    wavelengths = [1000.0, 1030.0, 1060.0]
    sigma_a, sigma_e = cross_sections_from_table(wavelengths, [2e-26, 6e-27, 1e-27], [2e-25, 3e-25, 1e-25], small_grid)
    assert sigma_a.shape == (small_grid.n_points,)
    assert np.isclose(float(sigma_e[0]), 3e-25), "The grid centre sits on the 1030 nm table point"
    assert np.all(np.asarray(sigma_a) >= 0)

    narrow_a, _ = cross_sections_from_table([1035.0, 1025.0], [1e-26, 1e-26], [1e-25, 1e-25], small_grid)
    assert np.any(np.asarray(narrow_a) == 0.0), "No extrapolation outside the table"

    alpha = 10 * math.log(10) / 10
    assert np.isclose(n_total_from_absorption(10.0, SIGMA_PUMP, 0.02), alpha / (SIGMA_PUMP * 0.02))
    with pytest.raises(ConfigurationError):
        n_total_from_absorption(10.0, 0.0, 0.02)


def test_medium_validation_and_profile_grid(small_grid) -> None:
    n = small_grid.n_points
    with pytest.raises(ConfigurationError):
        GainMedium(
            jnp.full(n, SIGMA_A), jnp.full(n, SIGMA_E), PUMP_NM, SIGMA_PUMP, SIGMA_PUMP, LIFETIME,
            n_total=[N_TOTAL, N_TOTAL], areas=[1e-12], signal_intensity=[[1.0, 1.0]],
            pump_intensity=[1.0, 1.0], repetition_rate_hz=REP_RATE,
        )
    with pytest.raises(ConfigurationError):
        RateEquationGain(_yb_medium(small_grid), RateEquationConfig(), _finer_grid(small_grid))

    x = np.linspace(-1, 1, 6)
    xx, yy = np.meshgrid(x, x)
    profiles = np.stack([np.exp(-(xx ** 2 + yy ** 2)), xx * np.exp(-(xx ** 2 + yy ** 2))])
    doped = np.where(xx ** 2 + yy ** 2 < 0.8, N_TOTAL, 0.0)
    dx = 1e-6
    medium = GainMedium.from_mode_profiles(
        profiles, dx, doped, jnp.full(n, SIGMA_A), jnp.full(n, SIGMA_E), PUMP_NM,
        SIGMA_PUMP, SIGMA_PUMP, LIFETIME, REP_RATE, cladding_area_m2=1e-10,
    )
    assert medium.n_modes == 2
    assert medium.n_total.shape == (int((doped > 0).sum()),)
    grid_n2 = medium.n2_to_grid(np.ones(medium.n_total.shape[0]))
    assert grid_n2.shape == doped.shape
    assert np.all(grid_n2[doped == 0] == 0)

    polarized = GainMedium.from_mode_profiles(
        profiles, dx, doped, jnp.full(n, SIGMA_A), jnp.full(n, SIGMA_E), PUMP_NM,
        SIGMA_PUMP, SIGMA_PUMP, LIFETIME, REP_RATE, cladding_area_m2=1e-10, polarized=True,
    )
    assert polarized.n_modes == 4 and polarized.polarization_factor == 1


def _finer_grid(sim_params):
    """A grid twice as fine, so cross sections built for ``sim_params`` no longer fit."""
    return SimParams.from_window(sim_params.time_window_ps, 2 * sim_params.n_points, sim_params.center_wavelength_um)


@pytest.mark.parametrize("step_method", ["RK4IP", "MPA"])
def test_copumped_amplifier(small_grid, single_mode_fiber, step_method) -> None:
    fiber = single_mode_fiber(length=0.5)
    pulse = Pulse.gaussian(100.0, 0.5, 1, small_grid)
    gain = RateEquationGain(_yb_medium(small_grid), RateEquationConfig(copump_power=1.0), small_grid)
    config = SimConfig(save_period=0.25, step_method=step_method, raman_model=0, mpa=MPAConfig(M=4))
    result = Propagator(fiber, pulse, config, gain=gain).solve()

    energies = result.energies_nj()
    assert energies[-1] > 1.5 * energies[0]
    assert result.n2.shape == (3,)
    assert np.all((result.n2 >= 0) & (result.n2 <= 1)), "N2 is a fraction of the dopant density"
    assert np.all(np.diff(result.pump_forward) <= 0), "The forward pump is absorbed"
    assert result.pump_forward[0] == 1.0
    assert result.ase_forward is None
    assert result.converged


def test_counterpumped_amplifier_with_ase(small_grid, single_mode_fiber) -> None:
    fiber = single_mode_fiber(length=0.5)
    pulse = Pulse.gaussian(100.0, 0.5, 1, small_grid)
    rate_config = RateEquationConfig(
        counterpump_power=0.5, include_ase=True, tol=1e-8, max_iterations=8, num_steps_per_save=10,
    )
    gain = RateEquationGain(_yb_medium(small_grid), rate_config, small_grid)
    propagator = Propagator(fiber, pulse, SimConfig(raman_model=0), gain=gain)
    assert propagator.needs_iteration

    result = propagator.solve()
    assert result.converged
    energy_history = result.stats['energy_history']
    assert len(energy_history) >= 3
    changes = np.abs(np.diff([entry['pulse_nj'] for entry in energy_history]))
    assert np.all(np.diff(changes) <= 0), "Each outer iteration moves the output energy less"

    energies = result.energies_nj()
    assert energies[-1] > energies[0]
    assert np.isclose(result.pump_backward[-1], 0.5), "The counter pump enters at z = L"
    assert result.pump_backward[0] < 0.5
    assert np.all(result.pump_forward == 0.0)
    assert result.ase_forward.shape == (2, 1, small_grid.n_points)
    assert np.all(result.ase_forward >= 0) and np.all(result.ase_backward >= 0)
    forward_ase, backward_ase = result.total_ase_power()
    assert forward_ase[-1] > 0 and backward_ase[0] > 0


def test_outer_loop_warns_when_not_converged(small_grid, single_mode_fiber) -> None:
    pulse = Pulse.gaussian(100.0, 0.5, 1, small_grid)
    rate_config = RateEquationConfig(
        counterpump_power=0.5, include_ase=True, tol=1e-15, max_iterations=2, num_steps_per_save=10,
    )
    gain = RateEquationGain(_yb_medium(small_grid), rate_config, small_grid)
    propagator = Propagator(single_mode_fiber(length=0.5), pulse, SimConfig(raman_model=0), gain=gain)
    with pytest.warns(IterationNotConvergedWarning):
        result = propagator.solve()
    assert not result.converged
    assert result.stats['outer_iterations'] == 2
    assert len(result.stats['energy_history']) == 2
    assert result.fields.shape == (2, 1, small_grid.n_points), "The last forward pass is still returned"


def _bipumped_run(sim_params, fiber, memory_limit_bytes=None):
    rate_config = RateEquationConfig(
        copump_power=0.5, counterpump_power=0.5, tol=1e-6, max_iterations=6,
        num_steps_per_save=10, memory_limit_bytes=memory_limit_bytes,
    )
    gain = RateEquationGain(_yb_medium(sim_params), rate_config, sim_params)
    pulse = Pulse.gaussian(100.0, 0.5, 1, sim_params)
    return Propagator(fiber, pulse, SimConfig(step_method='RK4IP', raman_model=0), gain=gain).solve()


def test_bipumped_amplifier_with_segmented_history(small_grid, single_mode_fiber) -> None:
    fiber = single_mode_fiber(length=0.5)
    resident = _bipumped_run(small_grid, fiber)
    segmented = _bipumped_run(small_grid, fiber, memory_limit_bytes=1)

    assert resident.stats['history_segments'] == 1 and resident.stats['history_swaps'] == 0
    assert segmented.stats['history_segments'] > 1, "One z point per segment under a tiny budget"
    assert segmented.stats['history_swaps'] > 0
    scale = float(np.max(np.abs(resident.fields)))
    assert np.allclose(segmented.fields, resident.fields, rtol=1e-12, atol=1e-12 * scale)
    assert np.allclose(segmented.pump_backward, resident.pump_backward, rtol=1e-12)
    assert segmented.stats['outer_iterations'] == resident.stats['outer_iterations']

    assert resident.pump_forward[0] == 0.5
    assert np.isclose(resident.pump_backward[-1], 0.5), "Both pumps enter at their own end"
    assert resident.pump_forward[-1] < 0.5 and resident.pump_backward[0] < 0.5
    energies = resident.energies_nj()
    assert energies[-1] > energies[0]


def test_rate_config_must_match_gain(small_grid, single_mode_fiber) -> None:
    pulse = Pulse.gaussian(100.0, 0.5, 1, small_grid)
    gain = RateEquationGain(_yb_medium(small_grid), RateEquationConfig(copump_power=1.0), small_grid)
    with pytest.raises(ConfigurationError):
        Propagator(single_mode_fiber(), pulse, rate_config=RateEquationConfig())
    with pytest.raises(ConfigurationError):
        Propagator(single_mode_fiber(), pulse, gain=gain, rate_config=RateEquationConfig(include_ase=True))
    two_mode = Pulse.gaussian(100.0, 0.5, 2, small_grid)
    with pytest.raises(ConfigurationError):
        Propagator(single_mode_fiber(), two_mode, gain=gain)

    assert RateEquationConfig(copump_power=1.0).pump_direction == 'co'
    assert RateEquationConfig(counterpump_power=1.0).pump_direction == 'counter'
    assert RateEquationConfig(copump_power=1.0, counterpump_power=1.0).pump_direction == 'bi'
    assert RateEquationConfig(include_ase=True).needs_iteration
    with pytest.raises(ConfigurationError):
        RateEquationConfig(copump_power=-1.0)
