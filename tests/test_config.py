import pytest

from mmnlse import AdaptiveStepConfig, ConfigurationError, MPAConfig, RateEquationConfig, SimConfig


def test_defaults_resolve_from_fiber_length() -> None:
    config = SimConfig()
    assert config.resolve_save_period(2.0) == 2.0
    assert config.resolve_max_delta_z(2.0) == pytest.approx(0.2)
    assert SimConfig(adaptive=AdaptiveStepConfig(max_delta_z=0.01)).resolve_max_delta_z(2.0) == 0.01
    assert config.resolve_step_method(1) == 'RK4IP'
    assert config.resolve_step_method(3) == 'MPA'
    assert SimConfig(step_method='RK4IP').resolve_step_method(3) == 'RK4IP'


def test_with_options_returns_a_copy() -> None:
    config = SimConfig()
    changed = config.with_options(raman_model=0, seed=3)
    assert changed.raman_model == 0 and changed.seed == 3
    assert config.raman_model == 1


@pytest.mark.parametrize("build", [
    lambda: AdaptiveStepConfig(threshold=0.0),
    lambda: AdaptiveStepConfig(max_delta_z=-1.0),
    lambda: MPAConfig(M=0),
    lambda: MPAConfig(n_tot_min=5, n_tot_max=3),
    lambda: SimConfig(save_period=-1.0),
    lambda: SimConfig(raman_model=3),
    lambda: SimConfig(parallel_strategy='threads'),
    lambda: RateEquationConfig(max_iterations=0),
    lambda: RateEquationConfig(memory_limit_bytes=0),
    lambda: RateEquationConfig(num_steps_per_save=0),
])
def test_invalid_settings_are_rejected(build) -> None:
    with pytest.raises(ConfigurationError):
        build()


def test_configuration_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        MPAConfig(tol=0.0)
