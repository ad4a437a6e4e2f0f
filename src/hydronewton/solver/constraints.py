"""
Physical constraints on Newton increments.

Projects a proposed increment so that trial + increment stays physically
admissible. Only the increment is rescaled, never the state, and no residuals
are evaluated here. Rules, in the order applied:

1. Temperature cap: the whole increment is scaled so no energy state moves
   more than ``max_temp_increment``
2. Canopy temperature: stop just past the freezing point when crossing it
3. Canopy water: no negative storage (simplified bisection)
4. Snow temperature: no layer above freezing (simplified bisection)
5. Snow water: do not drain more liquid water than is present
6. Soil temperature: stop just past the soil's critical freezing temperature
7. Matric head: cap large positive increments near saturation
"""
import logging
from typing import Optional

import numpy as np

from hydronewton.core.config import SolverConfig
from hydronewton.core.constants import TFREEZE
from hydronewton.core.exceptions import ConstraintError, HydroNewtonError
from hydronewton.core.types import StateType
from hydronewton.physics.phase_change import critical_soil_temperature, snow_liquid_fraction
from hydronewton.solver.problem import SolveContext

logger = logging.getLogger(__name__)


class ConstraintEnforcer:
    """
    Enforces physical constraints on iteration increments.

    The same rules are applied at every Newton iteration and every
    backtracking attempt. Applying the projection to its own output leaves it
    unchanged.
    """

    name = "constraints"

    def __init__(self, config: Optional[SolverConfig] = None):
        self.config = config or SolverConfig()

    def impose(
        self,
        state_trial: np.ndarray,
        increment: np.ndarray,
        context: SolveContext
    ) -> np.ndarray:
        """
        Constrain an iteration increment.

        Args:
            state_trial: Trial state vector
            increment: Proposed increment in physical units
            context: Solve context (index arena, layer state)

        Returns:
            Constrained copy of the increment

        Raises:
            ConstraintError: a snow hydrology state is neither total nor
                liquid water, with "constraints/" leading the message chain
        """
        try:
            return self._impose(state_trial, increment, context)
        except HydroNewtonError as exc:
            raise exc.add_prefix(self.name)

    def _impose(self, state_trial, increment, context):
        x_inc = np.array(increment, dtype=float)
        index = context.index

        x_inc = self._limit_temperature_increment(x_inc, index.ix_nrg_only)

        if index.ix_veg_nrg is not None:
            x_inc = self._constrain_canopy_temperature(state_trial, x_inc, index.ix_veg_nrg)

        if index.ix_veg_hyd is not None:
            x_inc = self._constrain_canopy_water(state_trial, x_inc, index.ix_veg_hyd)

        x_inc = self._constrain_snow_temperature(state_trial, x_inc, context)
        self._constrain_snow_drainage(state_trial, x_inc, context)
        self._constrain_soil_temperature(state_trial, x_inc, context)
        self._constrain_matric_head(state_trial, x_inc, index.ix_mat_only)

        return x_inc

    def _limit_temperature_increment(self, x_inc: np.ndarray, ix_nrg: np.ndarray) -> np.ndarray:
        """Scale the whole increment so the largest temperature change equals the cap"""
        cap = self.config.max_temp_increment
        if ix_nrg.size == 0:
            return x_inc

        nrg_inc = np.abs(x_inc[ix_nrg])
        if not np.any(nrg_inc > cap):
            return x_inc

        i_max = ix_nrg[np.argmax(nrg_inc)]
        factor = abs(cap / x_inc[i_max])
        logger.debug("Temperature increment %.4g exceeds cap, scaling by %.4g", x_inc[i_max], factor)
        x_inc = factor * x_inc
        # guard against round-off leaving an entry a hair above the cap
        x_inc[ix_nrg] = np.clip(x_inc[ix_nrg], -cap, cap)
        return x_inc

    def _crossing_increment(self, crit_diff: float, increment: float) -> Optional[float]:
        """
        Increment that stops just past a critical temperature, or None if the
        increment does not cross it.

        crit_diff > 0 means the state starts below the critical point (frozen).
        """
        eps_t = self.config.crossing_offset
        if crit_diff > 0.0:
            if increment > crit_diff:
                return crit_diff + eps_t
        elif increment < crit_diff:
            return crit_diff - eps_t
        return None

    def _constrain_canopy_temperature(self, state_trial, x_inc, ix_veg_nrg):
        crit_diff = TFREEZE - state_trial[ix_veg_nrg]
        c_inc = self._crossing_increment(crit_diff, x_inc[ix_veg_nrg])
        if c_inc is None:
            return x_inc

        logger.debug("Canopy temperature crosses freezing point, constraining increment")
        return (c_inc / x_inc[ix_veg_nrg]) * x_inc

    def _constrain_canopy_water(self, state_trial, x_inc, ix_veg_hyd):
        if x_inc[ix_veg_hyd] == 0.0 or state_trial[ix_veg_hyd] + x_inc[ix_veg_hyd] >= 0.0:
            return x_inc

        c_inc = -0.5 * state_trial[ix_veg_hyd]
        logger.debug("Canopy water would become negative, bisecting increment")
        return (c_inc / x_inc[ix_veg_hyd]) * x_inc

    def _constrain_snow_temperature(self, state_trial, x_inc, context: SolveContext):
        # loop over every layer so that no layer rises above freezing
        for i_state in context.index.ix_snow_only_nrg:
            if i_state is None or x_inc[i_state] == 0.0:
                continue
            if state_trial[i_state] + x_inc[i_state] > TFREEZE:
                c_inc = 0.5 * (TFREEZE - state_trial[i_state])
                x_inc = (c_inc / x_inc[i_state]) * x_inc
        return x_inc

    def _constrain_snow_drainage(self, state_trial, x_inc, context: SolveContext) -> None:
        """Change in total water is only due to liquid flux: drain at most the liquid present"""
        index = context.index
        for i_layer, i_hyd in enumerate(index.ix_snow_only_hyd):
            if i_hyd is None:
                continue

            i_nrg = index.ix_snow_only_nrg[i_layer]
            if i_nrg is not None:
                layer_temp = state_trial[i_nrg]
            else:
                layer_temp = context.layers.layer_temp[i_layer]

            state_type = index.state_types[i_hyd]
            if state_type == StateType.WAT_LAYER:
                vol_frac_liq = snow_liquid_fraction(layer_temp, context.layers.snowfrz_scale) * state_trial[i_hyd]
            elif state_type == StateType.LIQ_LAYER:
                vol_frac_liq = state_trial[i_hyd]
            else:
                raise ConstraintError(
                    f"expect total or liquid water for snow hydrology, got {state_type.value}"
                )

            if -x_inc[i_hyd] > vol_frac_liq:
                logger.debug("Snow layer %d drains more than available liquid water", i_layer)
                x_inc[i_hyd] = -0.5 * vol_frac_liq

    def _constrain_soil_temperature(self, state_trial, x_inc, context: SolveContext) -> None:
        index = context.index
        for i_soil, i_nrg in enumerate(index.ix_soil_only_nrg):
            if i_nrg is None:
                continue

            # matric head of total water after the increment
            i_liq = index.ix_soil_only_hyd[i_soil]
            if i_liq is not None:
                psi = state_trial[i_liq] + x_inc[i_liq]
            else:
                psi = context.layers.layer_matric_head[i_soil]

            crit_diff = critical_soil_temperature(psi) - state_trial[i_nrg]
            c_inc = self._crossing_increment(crit_diff, x_inc[i_nrg])
            if c_inc is not None:
                logger.debug("Soil layer %d crosses its freezing point", i_soil)
                x_inc[i_nrg] = c_inc

    def _constrain_matric_head(self, state_trial, x_inc, ix_mat: np.ndarray) -> None:
        cap = self.config.max_matric_increment
        for i_liq in ix_mat:
            if x_inc[i_liq] > cap and state_trial[i_liq] > 0.0:
                x_inc[i_liq] = cap
