"""
Finite-difference Jacobian and Jacobian self-tests.

Diagnostics only: the Newton step uses the analytic Jacobian, these routines
are switched on through ``SolverConfig.numerical_jacobian`` and
``SolverConfig.check_band_matrix`` to verify it.

Two forms of the one-sided difference are supported:
- residual:  J[:, j] = (r(x + dx e_j) - r(x)) / dx
- flux:      J[:, j] = -dt (f(x + dx e_j) - f(x)) / dx, plus the diagonal
             (mass matrix) term on J[j, j]
"""
import logging
from typing import Optional

import numpy as np

from hydronewton.core.config import NumericalJacobianForm
from hydronewton.core.constants import JACOBIAN_MISMATCH_RTOL, NUMERICAL_JACOBIAN_DX
from hydronewton.core.exceptions import (
    HydroNewtonError,
    InfeasibleStateError,
    JacobianError,
    SizeMismatchError,
)
from hydronewton.core.types import (
    FluxEvaluator,
    JacobianBuilder,
    MatrixForm,
    MatrixLayout,
)
from hydronewton.solver.problem import SolveContext

logger = logging.getLogger(__name__)


def numerical_jacobian(
    evaluator: FluxEvaluator,
    state: np.ndarray,
    context: SolveContext,
    dx: float = NUMERICAL_JACOBIAN_DX,
    form: NumericalJacobianForm = NumericalJacobianForm.RESIDUAL,
    diagonal: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Compute the full Jacobian by one-sided finite differences.

    Args:
        evaluator: Flux/residual evaluator
        state: State vector at which to differentiate
        context: Solve context; ``context.dt`` is used by the flux form
        dx: Perturbation applied to each state in turn
        form: Differentiate residuals or fluxes
        diagonal: Diagonal (mass matrix) term, required by the flux form

    Returns:
        Full (n_state, n_state) Jacobian

    Raises:
        InfeasibleStateError: a perturbed state is rejected by the evaluator
    """
    try:
        return _numerical_jacobian(evaluator, state, context, dx, form, diagonal)
    except HydroNewtonError as exc:
        raise exc.add_prefix("numerical_jacobian")


def _numerical_jacobian(evaluator, state, context, dx, form, diagonal):
    state = np.asarray(state, dtype=float)
    n_state = context.n_state
    if state.shape != (n_state,):
        raise SizeMismatchError("unexpected size of state vector")

    use_flux = NumericalJacobianForm(form) == NumericalJacobianForm.FLUX
    if use_flux:
        if diagonal is None or np.shape(diagonal) != (n_state,):
            raise SizeMismatchError("flux-based Jacobian needs a diagonal of length n_state")

    def _output(evaluation):
        values = evaluation.flux if use_flux else evaluation.residual
        values = np.asarray(values, dtype=float)
        if values.shape != (n_state,):
            raise SizeMismatchError(f"expected {n_state} values to differentiate, got {values.shape}")
        return values

    # no debug dumps from the n + 1 evaluations
    print_flag = context.print_flag
    context.print_flag = False
    try:
        base = context.evaluate(evaluator, state)
        if not base.feasible:
            raise InfeasibleStateError("state vector not feasible")
        base_values = _output(base)

        jacobian = np.zeros((n_state, n_state))
        for j in range(n_state):
            perturbed = state.copy()
            perturbed[j] += dx

            evaluation = context.evaluate(evaluator, perturbed)
            if not evaluation.feasible:
                raise InfeasibleStateError(
                    f"state vector not feasible after perturbing state {j}"
                )

            column = (_output(evaluation) - base_values) / dx
            if use_flux:
                jacobian[:, j] = -context.dt * column
                jacobian[j, j] += diagonal[j]
            else:
                jacobian[:, j] = column
    finally:
        context.print_flag = print_flag

    if context.print_flag:
        logger.debug("numerical Jacobian (%s form):\n%s", NumericalJacobianForm(form).value, jacobian)

    return jacobian


def compare_jacobians(
    analytic: np.ndarray,
    numerical: np.ndarray,
    layout: MatrixLayout = MatrixLayout(),
    rtol: float = JACOBIAN_MISMATCH_RTOL
) -> float:
    """
    Compare an analytic Jacobian (stored form) with a full numerical one.

    Mismatch is logged as a warning, never raised.

    Returns:
        Largest absolute difference relative to max(|J_numerical|, 1)
    """
    analytic_full = layout.to_full(analytic)
    numerical = np.asarray(numerical, dtype=float)
    if layout.form == MatrixForm.BANDED:
        # entries outside the band are dropped by the solver anyway
        numerical = layout.to_full(layout.from_full(numerical))

    scale = np.maximum(np.abs(numerical), 1.0)
    rel_diff = np.abs(analytic_full - numerical) / scale
    worst = float(np.max(rel_diff)) if rel_diff.size else 0.0

    if worst > rtol:
        i, j = np.unravel_index(np.argmax(rel_diff), rel_diff.shape)
        logger.warning(
            "Analytic and numerical Jacobians differ: max relative difference %.3e at (%d, %d) "
            "analytic=%.6e numerical=%.6e",
            worst, i, j, analytic_full[i, j], numerical[i, j],
        )
    else:
        logger.debug("Analytic Jacobian matches finite differences (max rel diff %.3e)", worst)

    return worst


def check_band_matrix(
    builder: JacobianBuilder,
    context: SolveContext,
    diagonal: np.ndarray,
    rtol: float = JACOBIAN_MISMATCH_RTOL
) -> np.ndarray:
    """
    Build the full Jacobian and transfer it into band storage, comparing the
    result with the builder's own banded Jacobian.

    Args:
        builder: Analytic Jacobian builder
        context: Solve context whose layout must be banded
        diagonal: Diagonal (mass matrix) term
        rtol: Relative tolerance for the comparison

    Returns:
        Band matrix extracted from the full build

    Raises:
        JacobianError: the layout is full, or the builder fails
    """
    layout = context.layout
    if layout.form == MatrixForm.FULL:
        raise JacobianError(
            "check_band_matrix/do not expect a full layout: "
            "check that the band diagonal matrix is being computed"
        )

    try:
        full = builder.build(context, MatrixLayout(MatrixForm.FULL), np.array(diagonal, dtype=float))
        banded = builder.build(context, layout, np.array(diagonal, dtype=float))
    except HydroNewtonError as exc:
        raise exc.add_prefix("check_band_matrix")
    except Exception as exc:
        raise JacobianError(f"check_band_matrix/{exc}") from exc

    band_from_full = layout.from_full(full.matrix)
    if context.print_flag:
        logger.debug("banded Jacobian extracted from full build:\n%s", band_from_full)

    compare_jacobians(banded.matrix, layout.to_full(band_from_full), layout, rtol)
    return band_from_full
