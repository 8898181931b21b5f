"""Kerr and Raman polarization terms of the GMMNLSE.

For every destination mode p the evaluators compute

    N_p(t) = Σ SK_plmn A_l A_m A_n*
             + Σ_l [h_a ∗ (Σ SRa_plmn A_m A_n*)] A_l
             + Σ_l [h_b ∗ (Σ SRb_plmn A_m A_n*)] A_l
             + Γ_spon(t) A_p

and return γ(ω)·F[N_p], i.e. the nonlinear contribution to dA_p(ω)/dz.
Raman convolutions are done in the frequency domain.

Two interchangeable implementations exist. ``VectorizedEvaluator`` is a
jitted jax kernel that scatters the whole nonzero list at once and batches
over any leading plane axes. ``SequentialEvaluator`` loops over destination
modes in numpy and precomputes the Raman partial sums A_m A_n* once per call.
"""

import logging
from typing import Optional

import jax
import jax.numpy as jnp
import numpy as np

from .errors import ConfigurationError
from .raman import RamanResponse
from .tensors import OverlapTensors, SparseTensor

logger = logging.getLogger(__name__)


class NonlinearEvaluator:
    """Common interface: ``evaluator(A_w, sponrs_gamma=None) -> dA_w/dz``.

    Args:
        tensors (OverlapTensors): Sparse SK, SRa, SRb.
        raman (RamanResponse): Kernels for the Raman convolutions.
        prefactor (jnp.ndarray): γ(ω) = i n₂ ω / c, shape (n_points,).
    """

    def __init__(self, tensors: OverlapTensors, raman: RamanResponse, prefactor: jnp.ndarray):
        if tensors.sra is not None and raman.haw is None:
            raise ConfigurationError("SRa tensor given without an isotropic Raman kernel")
        if tensors.srb is not None and raman.hbw is None:
            raise ConfigurationError("SRb tensor given without an anisotropic Raman kernel")
        self.tensors = tensors
        self.raman = raman
        self.prefactor = jnp.asarray(prefactor)
        self.n_modes = tensors.sk.n_modes

    def __call__(self, A_w, sponrs_gamma: Optional[jnp.ndarray] = None) -> jnp.ndarray:
        """Evaluate the nonlinear term.

        Args:
            A_w: Field spectrum, shape (..., n_modes, n_points). Leading axes
                are independent planes (MPA evaluates M+1 of them at once).
            sponrs_gamma: Optional spontaneous Raman term Γ_spon(t), shape (n_points,).

        Returns:
            jnp.ndarray: dA_w/dz from the nonlinearity, same shape as ``A_w``.
        """
        raise NotImplementedError


class VectorizedEvaluator(NonlinearEvaluator):
    """Data-parallel evaluation of the sparse quartic sum as one jitted kernel."""

    def __init__(self, tensors: OverlapTensors, raman: RamanResponse, prefactor: jnp.ndarray):
        super().__init__(tensors, raman, prefactor)
        self._kernel = jax.jit(self._build_kernel())

    def _build_kernel(self):
        n_modes = self.n_modes
        prefactor = self.prefactor
        sk = self.tensors.sk
        sk_p, sk_l, sk_m, sk_n = (jnp.asarray(sk.indices[:, i]) for i in range(4))
        sk_vals = jnp.asarray(sk.values)[:, jnp.newaxis]

        raman_terms = []
        for tensor, kernel in ((self.tensors.sra, self.raman.haw), (self.tensors.srb, self.raman.hbw)):
            if tensor is None:
                continue
            raman_terms.append((
                jnp.asarray(tensor.pairs[:, 0]),
                jnp.asarray(tensor.pairs[:, 1]),
                jnp.asarray(tensor.pair_index),
                jnp.asarray(tensor.pl_index),
                jnp.asarray(tensor.values)[:, jnp.newaxis],
                kernel,
            ))

        def kernel(A_w, sponrs_gamma):
            A_t = jnp.fft.ifft(A_w, axis=-1)
            lead = A_t.shape[:-2]
            n_points = A_t.shape[-1]

            # Kerr: scatter-add every nonzero (p,l,m,n) into its destination mode
            contribs = sk_vals * A_t[..., sk_l, :] * A_t[..., sk_m, :] * jnp.conj(A_t[..., sk_n, :])
            nonlinear = jnp.zeros_like(A_t).at[..., sk_p, :].add(contribs)

            if raman_terms:
                R_conv = jnp.zeros(lead + (n_modes * n_modes, n_points), dtype=A_t.dtype)
                for pm, pn, pair_index, pl_index, vals, hw in raman_terms:
                    R_mn = A_t[..., pm, :] * jnp.conj(A_t[..., pn, :])
                    R_pl = jnp.zeros(lead + (n_modes * n_modes, n_points), dtype=A_t.dtype)
                    R_pl = R_pl.at[..., pl_index, :].add(vals * R_mn[..., pair_index, :])
                    R_conv = R_conv + jnp.fft.ifft(hw * jnp.fft.fft(R_pl, axis=-1), axis=-1)
                R_conv = R_conv.reshape(lead + (n_modes, n_modes, n_points))
                nonlinear = nonlinear + jnp.einsum('...pln,...ln->...pn', R_conv, A_t)

            if sponrs_gamma is not None:
                nonlinear = nonlinear + sponrs_gamma * A_t

            return prefactor * jnp.fft.fft(nonlinear, axis=-1)

        return kernel

    def __call__(self, A_w, sponrs_gamma=None):
        return self._kernel(jnp.asarray(A_w), sponrs_gamma)


class SequentialEvaluator(NonlinearEvaluator):
    """CPU evaluation with per-destination adjacency lists.

    The products A_m A_n* are formed once for each distinct (m, n) pair and
    then reused by every (p, l) that needs them.
    """

    def __init__(self, tensors: OverlapTensors, raman: RamanResponse, prefactor: jnp.ndarray):
        super().__init__(tensors, raman, prefactor)
        self._prefactor_np = np.asarray(prefactor)
        self._kerr_rows = [tensors.sk.row(p) for p in range(self.n_modes)]
        self._raman_tables = []
        for tensor, kernel in ((tensors.sra, raman.haw), (tensors.srb, raman.hbw)):
            if tensor is not None:
                self._raman_tables.append((tensor, self._raman_adjacency(tensor), np.asarray(kernel)))

    def _raman_adjacency(self, tensor: SparseTensor):
        """For each p, a list of (l, pair indices, values)."""
        rows = []
        for p in range(self.n_modes):
            start, end = tensor.indptr[p], tensor.indptr[p + 1]
            ls = tensor.indices[start:end, 1]
            entries = []
            for l in np.unique(ls):
                sel = np.nonzero(ls == l)[0] + start
                entries.append((int(l), tensor.pair_index[sel], tensor.values[sel]))
            rows.append(entries)
        return rows

    def __call__(self, A_w, sponrs_gamma=None):
        A_t = np.fft.ifft(np.asarray(A_w), axis=-1)
        nonlinear = np.zeros_like(A_t)

        for p, (idx, vals) in enumerate(self._kerr_rows):
            if vals.size == 0:
                continue
            products = A_t[..., idx[:, 1], :] * A_t[..., idx[:, 2], :] * np.conj(A_t[..., idx[:, 3], :])
            nonlinear[..., p, :] = np.tensordot(vals, products, axes=([0], [-2]))

        for tensor, rows, hw in self._raman_tables:
            R_mn = A_t[..., tensor.pairs[:, 0], :] * np.conj(A_t[..., tensor.pairs[:, 1], :])
            for p, entries in enumerate(rows):
                for l, pair_index, vals in entries:
                    R_pl = np.tensordot(vals, R_mn[..., pair_index, :], axes=([0], [-2]))
                    R_conv = np.fft.ifft(hw * np.fft.fft(R_pl, axis=-1), axis=-1)
                    nonlinear[..., p, :] += R_conv * A_t[..., l, :]

        if sponrs_gamma is not None:
            nonlinear = nonlinear + np.asarray(sponrs_gamma) * A_t

        return jnp.asarray(self._prefactor_np * np.fft.fft(nonlinear, axis=-1))


def make_nonlinear_evaluator(
    strategy: str,
    tensors: OverlapTensors,
    raman: RamanResponse,
    prefactor: jnp.ndarray,
) -> NonlinearEvaluator:
    """Pick the evaluator for a parallel strategy ('vectorized' or 'sequential')."""
    if strategy == 'vectorized':
        evaluator = VectorizedEvaluator(tensors, raman, prefactor)
    elif strategy == 'sequential':
        evaluator = SequentialEvaluator(tensors, raman, prefactor)
    else:
        raise ConfigurationError(
            f"parallel_strategy must be 'vectorized' or 'sequential', got '{strategy}'"
        )
    logger.debug("Using %s nonlinear evaluator for %d modes", strategy, evaluator.n_modes)
    return evaluator
