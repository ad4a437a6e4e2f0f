"""
Phase-change relations used when projecting Newton increments.

1. Snow liquid fraction: fraction of total water that is liquid at a given
   temperature, from an empirical freezing curve.
2. Soil freezing-point depression: the critical temperature below which ice
   exists in a soil layer, from the Clapeyron relation with matric head.

References:
- Jordan, R. (1991). A one-dimensional temperature model for a snow cover.
  CRREL Special Report 91-16.
- Dall'Amico, M. et al. (2011). Robust and energy-conserving model of freezing
  variably-saturated soil. The Cryosphere, 5:469-484.
"""
from hydronewton.core.constants import GRAVITY, LH_FUSION, TFREEZE


def snow_liquid_fraction(temperature_k: float, snowfrz_scale: float) -> float:
    """
    Fraction of liquid water in a snow layer.

        f = 1 / (1 + (a * (Tf - min(T, Tf)))²)

    Args:
        temperature_k: Layer temperature (K)
        snowfrz_scale: Freezing curve parameter a (K-1)

    Returns:
        Liquid fraction in [0, 1]; exactly 1 at or above freezing
    """
    depression = snowfrz_scale * (TFREEZE - min(temperature_k, TFREEZE))
    return 1.0 / (1.0 + depression * depression)


def critical_soil_temperature(matric_head_m: float) -> float:
    """
    Temperature (K) below which ice forms in soil at a given matric head.

    Saturated soil (ψ >= 0) freezes at Tf; drier soil is depressed by
    ψ·g·Tf/Lf (Clapeyron).
    """
    return TFREEZE + min(matric_head_m, 0.0) * GRAVITY * TFREEZE / LH_FUSION

