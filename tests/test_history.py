import jax.numpy as jnp
import numpy as np
import pytest

from mmnlse import ConfigurationError
from mmnlse.history import BYTES_PER_COMPLEX, SegmentedHistory, estimate_memory_bytes


def test_memory_estimate() -> None:
    num_z, n_modes, n_points = 11, 2, 64
    expected = (4 * n_points * n_modes * num_z + 2 * num_z + n_points * n_modes ** 2 * 5 + 2 * n_points + 4 * 3)
    assert estimate_memory_bytes(num_z, n_modes, n_points, mpa_planes=5, n_transverse=3) == \
        expected * BYTES_PER_COMPLEX


def test_single_segment_without_limit() -> None:
    history = SegmentedHistory(11, 1, 16)
    assert history.num_segments == 1
    assert history.points_per_segment == 11
    point = history.read(10)
    assert point.ase_forward is None and point.ase_backward is None
    assert history.swaps == 0


def test_segmented_round_trip() -> None:
    num_z, n_modes, n_points = 20, 2, 16
    full = estimate_memory_bytes(num_z, n_modes, n_points)
    history = SegmentedHistory(num_z, n_modes, n_points, include_ase=True,
                               memory_limit_bytes=full // 4 + 1, initial_pump_forward=0.7)
    assert history.num_segments == 4
    assert history.points_per_segment == 5

    rng = np.random.default_rng(0)
    fields = rng.normal(size=(num_z, n_modes, n_points)) + 1j * rng.normal(size=(num_z, n_modes, n_points))
    for i in range(num_z):
        history.write(i, field_w=jnp.asarray(fields[i]), pump_backward=float(i), ase_forward=jnp.full((n_modes, n_points), i))
    for i in range(num_z - 1, -1, -1):
        point = history.read(i)
        assert np.allclose(point.field_w, fields[i]), f"Field at z index {i} must survive eviction"
        assert float(point.pump_backward) == float(i)
        assert float(point.pump_forward) == 0.7
        assert np.all(np.asarray(point.ase_forward) == i)
        assert np.all(np.asarray(point.ase_backward) == 0)

    assert history.swaps == 6, "Three swaps going up and three coming back down"
    assert np.allclose(history.host('field_w'), fields)
    assert np.allclose(history.host('pump_backward'), np.arange(num_z))


def test_history_errors() -> None:
    with pytest.raises(ConfigurationError):
        SegmentedHistory(1, 1, 16)
    history = SegmentedHistory(4, 1, 16)
    with pytest.raises(IndexError):
        history.read(4)
    with pytest.raises(KeyError):
        history.write(0, inversion=1.0)
    history.write(0, ase_forward=jnp.ones((1, 16)))
    assert history.read(0).ase_forward is None, "ASE is not stored when it is switched off"
    with pytest.raises(RuntimeError):
        history.load(0)
