"""z-resolved storage of the forward/backward iteration.

The outer gain iteration needs the signal field, both pump powers and both
ASE spectra at every point of the z grid. For long fibers that does not fit
on the accelerator, so the grid is split into segments. The host keeps all
of it in numpy; only one segment lives on the device as jax arrays. Moving
to a z index outside it evicts the resident segment back to the host and
loads the new one.
"""

import logging
import math
from typing import NamedTuple, Optional

import jax
import jax.numpy as jnp
import numpy as np

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

BYTES_PER_COMPLEX = 16

_FIELDS = ('field_w', 'pump_forward', 'pump_backward', 'ase_forward', 'ase_backward')


class HistoryPoint(NamedTuple):
    field_w: jnp.ndarray
    pump_forward: jnp.ndarray
    pump_backward: jnp.ndarray
    ase_forward: Optional[jnp.ndarray]
    ase_backward: Optional[jnp.ndarray]


def estimate_memory_bytes(
    num_z: int,
    n_modes: int,
    n_points: int,
    mpa_planes: int = 1,
    n_transverse: int = 1,
) -> int:
    """Device memory needed to keep the whole z history resident.

    Counts the signal fields and ASE spectra in both directions, the two pump
    powers, the MPA plane buffer, the cross sections and the gain-medium
    arrays, all at 16 bytes per element.
    """
    elements = (
        2 * n_points * n_modes * num_z
        + 2 * num_z
        + 2 * n_points * n_modes * num_z
        + n_points * n_modes ** 2 * mpa_planes
        + 2 * n_points
        + (n_modes + 2) * n_transverse
    )
    return elements * BYTES_PER_COMPLEX


class SegmentedHistory:
    """Per-z storage with one device-resident segment.

    Args:
        num_z (int): Number of z grid points.
        n_modes (int): Field modes.
        n_points (int): Time/frequency points.
        include_ase (bool): Allocate ASE spectra.
        memory_limit_bytes (int | None): Device budget; None keeps a single segment.
        mpa_planes (int): MPA plane count, for the memory estimate.
        n_transverse (int): Transverse gain points, for the memory estimate.
        initial_pump_forward (float): Value the forward pump history starts with.
    """

    def __init__(
        self,
        num_z: int,
        n_modes: int,
        n_points: int,
        include_ase: bool = False,
        memory_limit_bytes: Optional[int] = None,
        mpa_planes: int = 1,
        n_transverse: int = 1,
        initial_pump_forward: float = 0.0,
    ):
        if num_z < 2:
            raise ConfigurationError(f"A z history needs at least two points, got {num_z}")

        self.num_z = num_z
        self.include_ase = include_ase
        self.used_bytes = estimate_memory_bytes(num_z, n_modes, n_points, mpa_planes, n_transverse)
        if memory_limit_bytes is None:
            self.num_segments = 1
        else:
            self.num_segments = min(max(math.ceil(self.used_bytes / memory_limit_bytes), 1), num_z)
        self.points_per_segment = math.ceil(num_z / self.num_segments)
        self.num_segments = math.ceil(num_z / self.points_per_segment)

        spectrum_shape = (num_z, n_modes, n_points)
        self._host = {
            'field_w': np.zeros(spectrum_shape, dtype=np.complex128),
            'pump_forward': np.full(num_z, initial_pump_forward, dtype=np.float64),
            'pump_backward': np.zeros(num_z, dtype=np.float64),
            'ase_forward': np.zeros(spectrum_shape) if include_ase else None,
            'ase_backward': np.zeros(spectrum_shape) if include_ase else None,
        }
        self.resident_segment = None
        self._resident = {}
        self.swaps = 0

        if self.num_segments > 1:
            logger.info(
                "z history needs %.1f MB; split into %d segments of %d points",
                self.used_bytes / 1e6, self.num_segments, self.points_per_segment,
            )

    def segment_of(self, index: int) -> int:
        return index // self.points_per_segment

    def segment_bounds(self, segment: int):
        start = segment * self.points_per_segment
        return start, min(start + self.points_per_segment, self.num_z)

    def load(self, segment: int) -> None:
        """Copy ``segment`` from host storage onto the device."""
        if self.resident_segment is not None:
            raise RuntimeError("Evict the resident segment before loading another one")
        start, end = self.segment_bounds(segment)
        self._resident = {
            name: [jnp.asarray(row) for row in array[start:end]]
            for name, array in self._host.items() if array is not None
        }
        self.resident_segment = segment

    def flush(self) -> None:
        """Write the resident segment back to the host, keeping it loaded."""
        if self.resident_segment is None:
            return
        start, end = self.segment_bounds(self.resident_segment)
        for name, rows in self._resident.items():
            rows = jax.block_until_ready(rows)
            self._host[name][start:end] = np.stack([np.asarray(row) for row in rows])

    def evict(self) -> None:
        """Write the resident segment back to the host and release it."""
        self.flush()
        self._resident = {}
        self.resident_segment = None

    def _ensure_resident(self, index: int) -> int:
        if not 0 <= index < self.num_z:
            raise IndexError(f"z index {index} outside [0, {self.num_z})")
        segment = self.segment_of(index)
        if segment != self.resident_segment:
            if self.resident_segment is not None:
                self.evict()
                self.swaps += 1
            self.load(segment)
        return index - segment * self.points_per_segment

    def read(self, index: int) -> HistoryPoint:
        offset = self._ensure_resident(index)
        return HistoryPoint(*(
            self._resident[name][offset] if name in self._resident else None for name in _FIELDS
        ))

    def write(self, index: int, **values) -> None:
        """Store any of ``field_w``, ``pump_forward``, ... at z index ``index``."""
        offset = self._ensure_resident(index)
        for name, value in values.items():
            if name not in _FIELDS:
                raise KeyError(f"Unknown history quantity '{name}'")
            if value is None or name not in self._resident:
                continue
            self._resident[name][offset] = jnp.asarray(value)

    def host(self, name: str) -> Optional[np.ndarray]:
        """Complete host copy of one quantity, shape (num_z, ...)."""
        self.flush()
        return self._host[name]
