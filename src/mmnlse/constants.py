import jax.numpy as jnp

# Physical constants
C_m_s = 299792458  # Speed of light in vacuum (m/s)
C_m_ps = C_m_s * 1e-12  # Speed of light in meters per picosecond
C_um_ps = C_m_s * 1e-6  # Speed of light in micrometers per picosecond

# Quantum mechanics and thermodynamics
H_PLANCK = 6.62607015e-34  # Planck's constant (J·s)
HBAR = H_PLANCK / (2.0 * jnp.pi)  # Reduced Planck's constant (J·s)
K_BOLTZMANN = 1.380649e-23  # Boltzmann constant (J/K)

# Unit conversions
PS_TO_S = 1e-12
THZ_TO_HZ = 1e12

# Numerical tolerances
TOLERANCE_WAVELENGTH = 1e-20  # Minimum wavelength to avoid division by zero

__all__ = [
    'C_m_s', 'C_m_ps', 'C_um_ps',
    'H_PLANCK', 'HBAR', 'K_BOLTZMANN',
    'PS_TO_S', 'THZ_TO_HZ',
    'TOLERANCE_WAVELENGTH',
]
