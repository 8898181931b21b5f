import jax.numpy as jnp
from .constants import C_um_ps, TOLERANCE_WAVELENGTH, PS_TO_S


class SimParams:
    """Time and frequency grids shared by pulses, fibers and gain models.

    All frequency-domain quantities are stored in FFT ordering unless the
    attribute name says ``shifted``.

    Attributes:
        t (jnp.ndarray): Time grid points (ps).
        dt (float): Time step (ps).
        n_points (int): Number of time points.
        center_freq_thz (float): Center frequency (THz).
        omega_0 (float): Center angular frequency (rad/ps).
        freqs_abs_thz (jnp.ndarray): Absolute frequencies (THz).
        omega_abs (jnp.ndarray): Absolute angular frequencies (rad/ps).
        omega_relative (jnp.ndarray): Angular frequencies relative to omega_0 (rad/ps).
        df_hz (float): Frequency bin width (Hz).
        wavelengths_um (jnp.ndarray): Wavelengths (µm), shifted ordering.
    """

    def __init__(self, t: jnp.ndarray, center_freq_thz: float):
        """Initialize SimParams.

        Args:
            t (jnp.ndarray): Time grid points (ps), uniformly spaced.
            center_freq_thz (float): Center frequency (THz).
        """
        t = jnp.asarray(t)
        if t.ndim != 1:
            raise ValueError(
                f"Time grid `t` must be a 1-D array, got {t.ndim}D array with shape {t.shape}."
            )
        if t.size < 2:
            raise ValueError(f"Time grid `t` needs at least two points, got {t.size}.")

        self.t = t.astype(jnp.float64)
        self.dt = float(self.t[1] - self.t[0])
        self.n_points = int(self.t.size)

        self.center_freq_thz = float(center_freq_thz)
        self.omega_0 = 2 * jnp.pi * self.center_freq_thz

        # Frequency grids
        self.freqs_relative_thz = jnp.fft.fftfreq(self.n_points, self.dt)
        self.freqs_abs_thz = self.center_freq_thz + self.freqs_relative_thz
        self.freqs_relative_shifted_thz = jnp.fft.fftshift(self.freqs_relative_thz)
        self.omega_abs = 2 * jnp.pi * self.freqs_abs_thz
        self.omega_relative = 2 * jnp.pi * self.freqs_relative_thz
        self.df_hz = 1.0 / (self.n_points * self.dt * PS_TO_S)

        self.center_wavelength_um = C_um_ps / self.center_freq_thz
        freqs_abs_shifted = jnp.fft.fftshift(self.freqs_abs_thz)
        self.wavelengths_um = C_um_ps / jnp.where(
            freqs_abs_shifted == 0,
            TOLERANCE_WAVELENGTH,
            freqs_abs_shifted
        )

    @classmethod
    def from_window(cls, time_window_ps: float, n_points: int, center_wavelength_um: float) -> "SimParams":
        """Build a centred grid from a window width and a number of points."""
        dt = time_window_ps / n_points
        t = (jnp.arange(-n_points // 2, n_points // 2) * dt).astype(jnp.float64)
        return cls(t, C_um_ps / center_wavelength_um)

    @property
    def time_window_ps(self) -> float:
        return self.n_points * self.dt
