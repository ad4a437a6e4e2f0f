"""
Dense and banded linear algebra for the Newton step.

Default implementation of the ``LinearAlgebraBackend`` protocol:
- row/column scaling of the Jacobian
- LU factorize-and-solve (``scipy.linalg.lu_factor`` for full matrices,
  ``scipy.linalg.solve_banded`` for band storage)
- gradient of the scaled objective, g = Jᵀ r
"""
import numpy as np
import scipy.linalg

from hydronewton.core.exceptions import LinearSolveError, SizeMismatchError
from hydronewton.core.types import JacobianMatrix, MatrixForm, MatrixLayout


def _band_offsets(layout: MatrixLayout, n: int):
    """Yield (band row, row offset i - j, valid columns j) for band storage"""
    for k in range(layout.n_bands):
        offset = k - layout.ku
        j = np.arange(max(0, -offset), min(n, n - offset))
        yield k, offset, j


class ScipyLinearAlgebra:
    """LAPACK-backed linear algebra via scipy"""

    def __init__(self, check_finite: bool = True):
        self.check_finite = check_finite

    def scale_matrix(
        self,
        layout: MatrixLayout,
        jacobian: JacobianMatrix,
        row_scale: np.ndarray,
        col_scale: np.ndarray
    ) -> JacobianMatrix:
        """
        Scale the Jacobian: J_s[i, j] = row_scale[i] · J[i, j] · col_scale[j].

        Args:
            layout: Storage layout of the Jacobian
            jacobian: Jacobian in stored form
            row_scale: Function scaling vector (one per residual)
            col_scale: Variable scaling vector (one per state)

        Returns:
            Scaled Jacobian in the same stored form
        """
        jacobian = np.asarray(jacobian, dtype=float)
        n = jacobian.shape[-1]
        self._check_shape(layout, jacobian, n)

        if layout.form == MatrixForm.FULL:
            return row_scale[:, None] * jacobian * col_scale[None, :]

        scaled = np.zeros_like(jacobian)
        for k, offset, j in _band_offsets(layout, n):
            scaled[k, j] = row_scale[j + offset] * jacobian[k, j] * col_scale[j]
        return scaled

    def solve(self, layout: MatrixLayout, jacobian: JacobianMatrix, rhs: np.ndarray) -> np.ndarray:
        """Solve J·x = rhs. The input matrix is not overwritten."""
        jacobian = np.asarray(jacobian, dtype=float)
        n = jacobian.shape[-1]
        self._check_shape(layout, jacobian, n)
        if rhs.shape != (n,):
            raise SizeMismatchError(f"right-hand side has shape {rhs.shape}, expected ({n},)")

        try:
            if layout.form == MatrixForm.FULL:
                lu_piv = scipy.linalg.lu_factor(jacobian, check_finite=self.check_finite)
                step = scipy.linalg.lu_solve(lu_piv, rhs, check_finite=self.check_finite)
            else:
                step = scipy.linalg.solve_banded(
                    (layout.kl, layout.ku), jacobian, rhs,
                    check_finite=self.check_finite
                )
        except (np.linalg.LinAlgError, ValueError) as exc:
            raise LinearSolveError(f"unable to solve linear system: {exc}") from exc

        if not np.all(np.isfinite(step)):
            raise LinearSolveError("linear solve returned non-finite values (singular Jacobian?)")
        return step

    def gradient(self, layout: MatrixLayout, jacobian: JacobianMatrix, residual: np.ndarray) -> np.ndarray:
        """Gradient of f = ½‖r‖² with respect to the scaled state: g = Jᵀ r"""
        jacobian = np.asarray(jacobian, dtype=float)
        n = jacobian.shape[-1]
        self._check_shape(layout, jacobian, n)

        if layout.form == MatrixForm.FULL:
            return jacobian.T @ residual

        grad = np.zeros(n)
        for k, offset, j in _band_offsets(layout, n):
            grad[j] += jacobian[k, j] * residual[j + offset]
        return grad

    @staticmethod
    def _check_shape(layout: MatrixLayout, jacobian: np.ndarray, n: int) -> None:
        expected = (layout.n_lead(n), n)
        if jacobian.ndim != 2 or jacobian.shape != expected:
            raise SizeMismatchError(
                f"Jacobian has shape {jacobian.shape}, expected {expected} for {layout.form.value} storage"
            )
