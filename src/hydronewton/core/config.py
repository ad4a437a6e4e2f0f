"""
Configuration system with validation and environment awareness.
Based on Pydantic Settings for robust configuration management.
"""
import logging
from enum import Enum
from pathlib import Path
from typing import Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings

from hydronewton.core import constants


class RefinementStrategy(str, Enum):
    """Globalization strategy used for multi-state Newton steps"""
    LINE_SEARCH = "line_search"
    TRUST_REGION = "trust_region"


class NumericalJacobianForm(str, Enum):
    """Which evaluator output the finite-difference Jacobian differentiates"""
    RESIDUAL = "residual"
    FLUX = "flux"


class ConvergenceTolerances(BaseModel):
    """Absolute convergence tolerances, constant for a solve"""

    liquid: float = Field(constants.DEFAULT_TOL_LIQUID, gt=0, description="Volumetric liquid water (-)")
    matric: float = Field(constants.DEFAULT_TOL_MATRIC, gt=0, description="Matric head increment (m)")
    energy: float = Field(constants.DEFAULT_TOL_ENERGY, gt=0, description="Energy residual (J m-3)")

    model_config = ConfigDict(frozen=True)


class SolverConfig(BaseSettings):
    """Main configuration for the Newton step solver"""

    # Refinement
    refinement: RefinementStrategy = RefinementStrategy.LINE_SEARCH
    max_line_search: int = Field(constants.MAX_LINE_SEARCH, ge=1, description="Maximum number of backtracks")
    armijo_alpha: float = Field(constants.ARMIJO_ALPHA, gt=0, lt=1, description="Sufficient decrease parameter")

    # Constraint enforcement
    max_temp_increment: float = Field(constants.MAX_TEMP_INCREMENT, gt=0, description="Largest temperature increment (K)")
    max_matric_increment: float = Field(constants.MAX_MATRIC_INCREMENT, gt=0, description="Largest positive matric head increment (m)")
    crossing_offset: float = Field(constants.CROSSING_OFFSET, gt=0, description="Offset past a freezing-point crossing (K)")

    # Scalar solver
    bisection_rel_tolerance: float = Field(constants.BISECTION_REL_TOLERANCE, ge=0, lt=0.5)
    bracket_max_checks: int = Field(constants.BRACKET_MAX_CHECKS, ge=1)
    bracket_trial_increment: float = Field(constants.BRACKET_TRIAL_INCREMENT, gt=0)

    # Convergence
    tolerances: ConvergenceTolerances = Field(default_factory=ConvergenceTolerances)
    matric_scale_offset: float = Field(constants.MATRIC_SCALE_OFFSET, gt=0)
    scalar_tighten: float = Field(constants.SCALAR_TIGHTEN, gt=0, le=1)

    # Diagnostics
    numerical_jacobian: bool = Field(False, description="Cross-check the analytic Jacobian by finite differences")
    numerical_jacobian_form: NumericalJacobianForm = NumericalJacobianForm.RESIDUAL
    numerical_jacobian_dx: float = Field(constants.NUMERICAL_JACOBIAN_DX, gt=0)
    jacobian_mismatch_rtol: float = Field(constants.JACOBIAN_MISMATCH_RTOL, gt=0)
    check_band_matrix: bool = Field(False, description="Compare banded Jacobian with a full build")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    model_config = ConfigDict(
        env_prefix="HYDRONEWTON_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_config(self):
        """Cross-field validation"""
        if self.numerical_jacobian_dx >= self.max_temp_increment:
            raise ValueError("numerical_jacobian_dx must be far smaller than max_temp_increment")
        return self

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> "SolverConfig":
        """Load configuration from YAML file"""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Config file not found: {yaml_path}")

        with open(yaml_path, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        return cls(**yaml_config)

    def to_yaml(self, yaml_path: Union[str, Path]):
        """Save configuration to YAML file"""
        yaml_path = Path(yaml_path)
        yaml_path.parent.mkdir(parents=True, exist_ok=True)

        with open(yaml_path, "w", encoding="utf-8") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False)


def configure_logging(config: "SolverConfig") -> None:
    """Apply the configured level and format to the package logger"""
    logging.basicConfig(format=config.log_format)
    logging.getLogger("hydronewton").setLevel(config.log_level)


# Global configuration instance
_config: Optional[SolverConfig] = None


def get_config(config_path: Optional[Path] = None) -> SolverConfig:
    """Get or create configuration instance (singleton pattern)"""
    global _config

    if _config is None:
        if config_path and config_path.exists():
            _config = SolverConfig.from_yaml(config_path)
        else:
            # Try to load from environment
            _config = SolverConfig()

    return _config


def set_config(config: Optional[SolverConfig]):
    """Set configuration (useful for testing)"""
    global _config
    _config = config
