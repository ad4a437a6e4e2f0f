"""Physics relations consumed by the solver's constraint layer."""
from hydronewton.physics.phase_change import (
    snow_liquid_fraction,
    critical_soil_temperature,
)

__all__ = [
    "snow_liquid_fraction",
    "critical_soil_temperature",
]
