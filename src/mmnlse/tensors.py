"""Sparse overlap tensors for the Kerr and Raman sums.

The dense S^R_plmn tensor is turned once, at setup, into an index-compressed
form that both nonlinear evaluators consume directly.
"""

import logging
from typing import NamedTuple, Optional

import numpy as np

from .errors import ConfigurationError
from .raman import RamanResponse

logger = logging.getLogger(__name__)

# Relative magnitude below which tensor entries are dropped
SPARSITY_THRESHOLD = 1e-5


class SparseTensor:
    """Nonzero entries of a 4-index tensor sorted by destination mode.

    Attributes:
        n_modes (int): Size of every tensor axis.
        indices (np.ndarray): (nnz, 4) int array of (p, l, m, n).
        values (np.ndarray): (nnz,) float values.
        indptr (np.ndarray): (n_modes + 1,) offsets; entries of destination
            mode p live in ``indptr[p]:indptr[p + 1]``.
        pairs (np.ndarray): (n_pairs, 2) unique (m, n) pairs.
        pair_index (np.ndarray): (nnz,) position of each entry's (m, n) in ``pairs``.
        pl_index (np.ndarray): (nnz,) flattened ``p * n_modes + l`` group id.
    """

    def __init__(self, indices: np.ndarray, values: np.ndarray, n_modes: int):
        indices = np.asarray(indices, dtype=np.int64).reshape(-1, 4)
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        if indices.shape[0] != values.shape[0]:
            raise ConfigurationError(
                f"indices ({indices.shape[0]}) and values ({values.shape[0]}) differ in length"
            )
        if indices.size and (indices.min() < 0 or indices.max() >= n_modes):
            raise ConfigurationError(f"tensor indices out of range for {n_modes} modes")

        order = np.lexsort(indices.T[::-1])
        self.indices = indices[order]
        self.values = values[order]
        self.n_modes = int(n_modes)
        self.indptr = np.searchsorted(self.indices[:, 0], np.arange(n_modes + 1))

        self.pairs, self.pair_index = np.unique(self.indices[:, 2:], axis=0, return_inverse=True)
        self.pair_index = self.pair_index.reshape(-1)
        self.pl_index = self.indices[:, 0] * n_modes + self.indices[:, 1]

    @classmethod
    def from_dense(cls, tensor: np.ndarray, threshold: float = SPARSITY_THRESHOLD) -> "SparseTensor":
        tensor = np.asarray(tensor, dtype=np.float64)
        peak = np.max(np.abs(tensor)) if tensor.size else 0.0
        mask = np.abs(tensor) > peak * threshold if peak > 0 else np.zeros(tensor.shape, dtype=bool)
        indices = np.argwhere(mask)
        return cls(indices, tensor[mask], tensor.shape[0])

    @property
    def nnz(self) -> int:
        return self.values.shape[0]

    def row(self, p: int):
        """(indices, values) of destination mode ``p``."""
        start, end = self.indptr[p], self.indptr[p + 1]
        return self.indices[start:end], self.values[start:end]

    def to_dense(self) -> np.ndarray:
        dense = np.zeros((self.n_modes,) * 4)
        dense[tuple(self.indices.T)] = self.values
        return dense


class OverlapTensors(NamedTuple):
    """Kerr tensor plus optional isotropic and anisotropic Raman tensors."""
    sk: SparseTensor
    sra: Optional[SparseTensor]
    srb: Optional[SparseTensor]


def _polarization_tensors():
    delta = np.eye(2)
    kerr = (
        np.einsum('ab,cd->abcd', delta, delta)
        + np.einsum('ac,bd->abcd', delta, delta)
        + np.einsum('ad,bc->abcd', delta, delta)
    ) / 3
    raman_iso = np.einsum('ab,cd->abcd', delta, delta)
    raman_aniso = (
        np.einsum('ac,bd->abcd', delta, delta)
        + np.einsum('ad,bc->abcd', delta, delta)
    ) / 2
    return kerr, raman_iso, raman_aniso


def _expand_polarization(sr: np.ndarray, pol_tensor: np.ndarray) -> np.ndarray:
    """Combine a spatial tensor with a polarization tensor into [m1x, m1y, ...] order."""
    m = sr.shape[0]
    full = np.einsum('plmn,abcd->palbmcnd', sr, pol_tensor)
    return full.reshape(2 * m, 2 * m, 2 * m, 2 * m)


def calc_srsk(
    sr_tensor,
    raman: RamanResponse,
    scalar: bool = True,
    ellipticity: float = 0.0,
) -> OverlapTensors:
    """Build SK, SRa and SRb from the spatial overlap tensor.

    Args:
        sr_tensor: Dense spatial overlap tensor (1/m²), shape (m, m, m, m).
        raman (RamanResponse): Supplies fR and whether an anisotropic part exists.
        scalar (bool): Scalar fields (m modes) or polarized fields (2m modes).
        ellipticity (float): Polarization basis; only linear (0) is supported.

    Returns:
        OverlapTensors: Sparse tensors; ``sra`` is None without Raman and
        ``srb`` is None unless the Raman response is anisotropic.
    """
    sr = np.asarray(sr_tensor, dtype=np.float64)
    fr = raman.fr

    if scalar:
        sk = SparseTensor.from_dense((1 - fr) * sr)
        sra = SparseTensor.from_dense(fr * sr) if raman.enabled else None
        return OverlapTensors(sk, sra, None)

    if ellipticity != 0:
        raise ConfigurationError(
            f"Only the linear polarization basis (ellipticity=0) is supported, got {ellipticity}"
        )

    kerr_pol, iso_pol, aniso_pol = _polarization_tensors()
    sk = SparseTensor.from_dense((1 - fr) * _expand_polarization(sr, kerr_pol))
    sra = srb = None
    if raman.enabled:
        sra = SparseTensor.from_dense(fr * _expand_polarization(sr, iso_pol))
        if raman.anisotropic:
            srb = SparseTensor.from_dense(fr * _expand_polarization(sr, aniso_pol))

    logger.debug(
        "Overlap tensors: SK nnz=%d, SRa nnz=%s, SRb nnz=%s",
        sk.nnz,
        None if sra is None else sra.nnz,
        None if srb is None else srb.nnz,
    )
    return OverlapTensors(sk, sra, srb)
