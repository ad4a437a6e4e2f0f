"""
Multi-criterion convergence check for a Newton iteration.

Six independent criteria, each satisfied when its state category is absent
from the active subset:

1. canopy water balance      |r| · ρw < tol_liquid
2. energy                    max |r| < tol_energy
3. liquid water content      max |r| < tol_liquid (tightened for scalar solves)
4. matric head               max |Δψ / (|ψ| + offset)| < tol_matric
5. soil water balance        |Σ r · Δz| < tol_liquid
6. aquifer storage           |r| · ρw < tol_liquid

The matric-head criterion uses the iteration increment rather than the
residual, scaled by matric head so dry layers do not tighten it needlessly.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from hydronewton.core.config import SolverConfig
from hydronewton.core.constants import IDEN_WATER
from hydronewton.solver.problem import SolveContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConvergenceReport:
    """Outcome of each criterion and the measured quantity (NaN when absent)"""
    canopy: bool
    energy: bool
    liquid: bool
    matric: bool
    watbal: bool
    aquifer: bool
    canopy_max: float = np.nan
    energy_max: float = np.nan
    liquid_max: float = np.nan
    matric_max: float = np.nan
    soil_watbal_err: float = np.nan
    aquifer_max: float = np.nan

    @property
    def converged(self) -> bool:
        return bool(self.canopy and self.watbal and self.matric
                    and self.liquid and self.energy and self.aquifer)

    def __bool__(self) -> bool:
        return self.converged

    def to_dict(self) -> Dict[str, float]:
        return {
            'converged': self.converged,
            'canopy_max': self.canopy_max,
            'energy_max': self.energy_max,
            'liquid_max': self.liquid_max,
            'matric_max': self.matric_max,
            'soil_watbal_err': self.soil_watbal_err,
            'aquifer_max': self.aquifer_max,
        }


def check_convergence(
    residual: np.ndarray,
    increment: np.ndarray,
    state: np.ndarray,
    context: SolveContext,
    config: Optional[SolverConfig] = None
) -> ConvergenceReport:
    """
    Check convergence of a candidate state.

    Args:
        residual: Residual vector at the candidate (mixed units)
        increment: Iteration increment (mixed units)
        state: Candidate state vector (mixed units)
        context: Solve context providing indices and layer depths; its
            tolerances, when set, override those of the configuration
        config: Solver configuration (default tolerances, matric offset,
            scalar tightening)

    Returns:
        ConvergenceReport; truthy when every criterion is satisfied
    """
    config = config or SolverConfig()
    tol = context.tolerances if context.tolerances is not None else config.tolerances
    index = context.index
    residual = np.asarray(residual, dtype=float)

    # canopy water balance (kg m-2 == mm)
    if index.ix_veg_hyd is not None:
        canopy_max = abs(residual[index.ix_veg_hyd]) * IDEN_WATER
        canopy_conv = canopy_max < tol.liquid
    else:
        canopy_max, canopy_conv = np.nan, True

    # energy residuals (J m-3)
    if index.ix_nrg_only.size > 0:
        energy_max = float(np.max(np.abs(residual[index.ix_nrg_only])))
        energy_conv = energy_max < tol.energy
    else:
        energy_max, energy_conv = np.nan, True

    # volumetric liquid water residuals (-)
    if index.ix_hyd_only.size > 0:
        liquid_max = float(np.max(np.abs(residual[index.ix_hyd_only])))
        liquid_tol = tol.liquid * config.scalar_tighten if context.scalar_solution else tol.liquid
        liquid_conv = liquid_max < liquid_tol
    else:
        liquid_max, liquid_conv = np.nan, True

    ix_mat = index.ix_mat_only
    if ix_mat.size > 0:
        # matric head increment, relative to matric head
        psi_scale = np.abs(state[ix_mat]) + config.matric_scale_offset
        matric_max = float(np.max(np.abs(increment[ix_mat] / psi_scale)))
        matric_conv = matric_max < tol.matric

        # soil water balance (m)
        depth = context.layers.layer_depth[index.n_snow + index.ix_matric_head]
        soil_watbal_err = float(np.sum(residual[ix_mat] * depth))
        watbal_conv = abs(soil_watbal_err) < tol.liquid
    else:
        matric_max, matric_conv = np.nan, True
        soil_watbal_err, watbal_conv = np.nan, True

    # aquifer storage (m -> mm)
    if index.ix_aq_wat is not None:
        aquifer_max = abs(residual[index.ix_aq_wat]) * IDEN_WATER
        aquifer_conv = aquifer_max < tol.liquid
    else:
        aquifer_max, aquifer_conv = np.nan, True

    report = ConvergenceReport(
        canopy=bool(canopy_conv), energy=bool(energy_conv), liquid=bool(liquid_conv),
        matric=bool(matric_conv), watbal=bool(watbal_conv), aquifer=bool(aquifer_conv),
        canopy_max=canopy_max, energy_max=energy_max, liquid_max=liquid_max,
        matric_max=matric_max, soil_watbal_err=soil_watbal_err, aquifer_max=aquifer_max,
    )

    if context.print_flag:
        logger.debug(
            "check convergence: iter=%d matric=%.5e liquid=%.5e energy=%.5e canopy=%.5e "
            "aquifer=%.5e watbal=%.5e flags=%s",
            context.iteration, matric_max, liquid_max, energy_max, canopy_max,
            aquifer_max, soil_watbal_err,
            (matric_conv, liquid_conv, energy_conv, watbal_conv, canopy_conv, aquifer_conv),
        )

    return report
