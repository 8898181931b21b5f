from .boundary import create_damped_freq_window, apply_freq_window
from .noise import add_shot_noise_to_field, photon_noise_amplitude, complex_normal

__all__ = [
    'create_damped_freq_window',
    'apply_freq_window',
    'add_shot_noise_to_field',
    'photon_noise_amplitude',
    'complex_normal',
]
