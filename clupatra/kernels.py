from __future__ import annotations
import numpy as np

# Optional Numba acceleration (safe fallback to NumPy)
try:
    from numba import njit, prange  # type: ignore
    NUMBA_OK = True
except Exception:  # pragma: no cover
    NUMBA_OK = False


__all__ = [
    "NUMBA_OK",
    "chi2_batch",
    "chi2_batch_numpy",
    "measurement_covariance",
]


def measurement_covariance(rphi_resolution: float, z_resolution: float) -> np.ndarray:
    r"""
    Diagonal point covariance :math:`V=\mathrm{diag}(\sigma_{r\phi}^2, \sigma_{r\phi}^2, \sigma_z^2)`.

    The first two components carry the transverse residual projected on the
    radial unit vector of the fitted circle, so both share :math:`\sigma_{r\phi}`.
    """
    s = float(rphi_resolution) ** 2
    return np.diag([s, s, float(z_resolution) ** 2]).astype(np.float64)


def _robust_cholesky_numpy(S: np.ndarray) -> np.ndarray:
    r"""
    Lower Cholesky factor of a 3×3 point covariance.

    A covariance that is not numerically positive definite gets
    :math:`\varepsilon I_3` added, with :math:`\varepsilon` growing tenfold
    from :math:`10^{-12}` over eight tries; after that its spectrum is
    clipped at :math:`w_\max\,10^{-15}` and refactored.
    """
    try:
        return np.linalg.cholesky(S)
    except np.linalg.LinAlgError:
        I = np.eye(3, dtype=S.dtype)
        eps = 1e-12
        for _ in range(8):
            try:
                return np.linalg.cholesky(S + eps * I)
            except np.linalg.LinAlgError:
                eps *= 10.0
        w, V = np.linalg.eigh(S)
        w = np.clip(w, w.max() * 1e-15, None)
        return np.linalg.cholesky((V * w) @ V.T)


def chi2_batch_numpy(diff: np.ndarray, S: np.ndarray) -> np.ndarray:
    r"""
    Batched Mahalanobis :math:`\chi^2` with robust Cholesky and triangular solves.

    .. math::
        \chi^2_i \;=\; r_i^\top S^{-1} r_i \;=\; \|L^{-1} r_i\|_2^2,
        \qquad S = L L^\top.

    Parameters
    ----------
    diff : ndarray, shape (m, 3)
        Residuals stacked row-wise.
    S : ndarray, shape (3, 3)
        Point covariance shared by the batch.

    Returns
    -------
    chi2 : ndarray, shape (m,)
    """
    if diff.size == 0:
        return np.empty(0, dtype=np.float64)
    diff = np.asarray(diff, dtype=np.float64, order="C")
    L = _robust_cholesky_numpy(np.asarray(S, dtype=np.float64, order="C"))
    Y = np.linalg.solve(L, diff.T)          # (3, m)
    return np.einsum("ij,ij->j", Y, Y, optimize=True)


if NUMBA_OK:
    @njit(cache=True, fastmath=True)
    def _cholesky3_numba(S: np.ndarray) -> np.ndarray:
        r"""
        Unrolled :math:`3\times 3` Cholesky factor with a tiny diagonal floor.
        """
        L = np.zeros((3, 3), dtype=np.float64)
        L[0, 0] = np.sqrt(max(S[0, 0], 1e-300))
        L[1, 0] = S[1, 0] / L[0, 0]
        L[1, 1] = np.sqrt(max(S[1, 1] - L[1, 0] * L[1, 0], 1e-300))
        L[2, 0] = S[2, 0] / L[0, 0]
        L[2, 1] = (S[2, 1] - L[2, 0] * L[1, 0]) / L[1, 1]
        L[2, 2] = np.sqrt(max(S[2, 2] - L[2, 0] * L[2, 0] - L[2, 1] * L[2, 1], 1e-300))
        return L

    @njit(cache=True, fastmath=True, parallel=True)
    def _chi2_batch_numba(diff: np.ndarray, S: np.ndarray) -> np.ndarray:
        m = diff.shape[0]
        out = np.empty(m, dtype=np.float64)
        if m == 0:
            return out
        L = _cholesky3_numba(S)
        for i in prange(m):
            # forward: L * u = r ; chi2 = |u|^2
            u0 = diff[i, 0] / L[0, 0]
            u1 = (diff[i, 1] - L[1, 0] * u0) / L[1, 1]
            u2 = (diff[i, 2] - L[2, 0] * u0 - L[2, 1] * u1) / L[2, 2]
            out[i] = u0 * u0 + u1 * u1 + u2 * u2
        return out

    def chi2_batch(diff: np.ndarray, S: np.ndarray) -> np.ndarray:
        r"""
        Parallel batched Mahalanobis :math:`\chi^2` (Numba).

        The forward substitution :math:`L u_i = r_i` is unrolled and the batch
        is parallelized with ``prange``; :math:`\chi^2_i = \|u_i\|^2`.
        """
        return _chi2_batch_numba(
            np.ascontiguousarray(diff, dtype=np.float64).reshape(-1, 3),
            np.ascontiguousarray(S, dtype=np.float64),
        )

else:
    def chi2_batch(diff: np.ndarray, S: np.ndarray) -> np.ndarray:
        r"""
        Batched Mahalanobis :math:`\chi^2` (NumPy fallback).

        See Also
        --------
        chi2_batch_numpy
        """
        return chi2_batch_numpy(np.asarray(diff, dtype=np.float64).reshape(-1, 3), S)
