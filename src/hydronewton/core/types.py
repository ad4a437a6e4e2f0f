"""
Type definitions for the hydronewton solver.

The state vector is heterogeneous: its entries are addressed through an
explicit index arena (``StateIndex``) derived from a list of ``StateEntry``
records, so every category lookup is a named accessor rather than an alias
into a shared record.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np
from typing_extensions import TypeAlias

# Array types for static typing with numpy
StateVector: TypeAlias = np.ndarray  # Shape: (n_state,)
ResidualVector: TypeAlias = np.ndarray  # Shape: (n_state,)
JacobianMatrix: TypeAlias = np.ndarray  # Shape: (n_lead, n_state)


class StateType(str, Enum):
    """Physical meaning of an entry in the state vector"""
    NRG_CANAIR = "nrg_canair"  # canopy air space energy
    NRG_CANOPY = "nrg_canopy"  # vegetation canopy energy
    WAT_CANOPY = "wat_canopy"  # canopy water mass
    NRG_LAYER = "nrg_layer"  # snow/soil layer energy
    WAT_LAYER = "wat_layer"  # snow/soil total water
    LIQ_LAYER = "liq_layer"  # snow/soil liquid water
    MAT_LAYER = "mat_layer"  # soil matric head
    LMP_LAYER = "lmp_layer"  # soil liquid matric potential
    WAT_AQUIFER = "wat_aquifer"  # aquifer storage

    @property
    def is_energy(self) -> bool:
        return self in (StateType.NRG_CANAIR, StateType.NRG_CANOPY, StateType.NRG_LAYER)

    @property
    def is_layer_hydrology(self) -> bool:
        return self in (
            StateType.WAT_LAYER, StateType.LIQ_LAYER,
            StateType.MAT_LAYER, StateType.LMP_LAYER,
        )

    @property
    def is_matric(self) -> bool:
        return self in (StateType.MAT_LAYER, StateType.LMP_LAYER)


class MatrixForm(str, Enum):
    """Storage form of the Jacobian"""
    FULL = "full"
    BANDED = "banded"


@dataclass(frozen=True)
class MatrixLayout:
    """
    Storage layout of the Jacobian.

    Banded matrices use the ``scipy.linalg.solve_banded`` layout:
    ``ab[ku + i - j, j] == a[i, j]`` with ``kl + ku + 1`` rows.
    """
    form: MatrixForm = MatrixForm.FULL
    kl: int = 0  # sub-diagonal bands
    ku: int = 0  # super-diagonal bands

    def __post_init__(self) -> None:
        if self.kl < 0 or self.ku < 0:
            raise ValueError("Bandwidths must be non-negative")

    @property
    def n_bands(self) -> int:
        return self.kl + self.ku + 1

    def n_lead(self, n_state: int) -> int:
        """Length of the leading dimension of the stored Jacobian"""
        if self.form == MatrixForm.BANDED:
            return self.n_bands
        return n_state

    def to_full(self, matrix: np.ndarray) -> np.ndarray:
        """Expand a stored Jacobian into an (n, n) array"""
        matrix = np.asarray(matrix, dtype=float)
        if self.form == MatrixForm.FULL:
            return matrix.copy()

        n = matrix.shape[1]
        full = np.zeros((n, n))
        for k in range(self.n_bands):
            offset = k - self.ku  # i - j
            j = np.arange(max(0, -offset), min(n, n - offset))
            full[j + offset, j] = matrix[k, j]
        return full

    def from_full(self, full: np.ndarray) -> np.ndarray:
        """Extract the stored form from an (n, n) array, dropping out-of-band entries"""
        full = np.asarray(full, dtype=float)
        if self.form == MatrixForm.FULL:
            return full.copy()

        n = full.shape[1]
        band = np.zeros((self.n_bands, n))
        for k in range(self.n_bands):
            offset = k - self.ku
            j = np.arange(max(0, -offset), min(n, n - offset))
            band[k, j] = full[j + offset, j]
        return band


@dataclass(frozen=True)
class StateEntry:
    """One entry of the state vector: its type and, for layer states, its layer"""
    state_type: StateType
    layer: Optional[int] = None  # 0-based over snow then soil layers


@dataclass
class StateIndex:
    """
    Index arena mapping state categories to positions in the state vector.

    Single-state categories are ``None`` when absent. Per-layer lists hold one
    entry per snow (or soil) layer, ``None`` where the layer's state is not
    part of the active subset.
    """
    n_snow: int
    n_soil: int
    state_types: List[StateType]
    ix_cas_nrg: Optional[int] = None
    ix_veg_nrg: Optional[int] = None
    ix_veg_hyd: Optional[int] = None
    ix_aq_wat: Optional[int] = None
    ix_nrg_only: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    ix_hyd_only: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    ix_mat_only: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    ix_matric_head: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    ix_snow_only_nrg: List[Optional[int]] = field(default_factory=list)
    ix_snow_only_hyd: List[Optional[int]] = field(default_factory=list)
    ix_soil_only_nrg: List[Optional[int]] = field(default_factory=list)
    ix_soil_only_hyd: List[Optional[int]] = field(default_factory=list)

    @property
    def n_state(self) -> int:
        return len(self.state_types)

    @property
    def n_layers(self) -> int:
        return self.n_snow + self.n_soil

    @classmethod
    def from_entries(cls, entries: Sequence[StateEntry], n_snow: int, n_soil: int) -> "StateIndex":
        """Derive every category index from an ordered list of state entries"""
        ix_nrg, ix_hyd, ix_mat, ix_matric = [], [], [], []
        snow_nrg: List[Optional[int]] = [None] * n_snow
        snow_hyd: List[Optional[int]] = [None] * n_snow
        soil_nrg: List[Optional[int]] = [None] * n_soil
        soil_hyd: List[Optional[int]] = [None] * n_soil
        singles = {}

        for i, entry in enumerate(entries):
            stype = entry.state_type

            if stype in (StateType.NRG_CANAIR, StateType.NRG_CANOPY,
                         StateType.WAT_CANOPY, StateType.WAT_AQUIFER):
                if stype in singles:
                    raise ValueError(f"Duplicate state entry {stype.value}")
                singles[stype] = i
                if stype.is_energy:
                    ix_nrg.append(i)
                continue

            if entry.layer is None or not 0 <= entry.layer < n_snow + n_soil:
                raise ValueError(f"State {i} ({stype.value}) needs a layer in [0, {n_snow + n_soil})")

            is_snow = entry.layer < n_snow
            if stype.is_energy:
                ix_nrg.append(i)
                if is_snow:
                    snow_nrg[entry.layer] = i
                else:
                    soil_nrg[entry.layer - n_snow] = i
            else:
                if stype.is_matric and is_snow:
                    raise ValueError(f"State {i}: matric head is only defined for soil layers")
                ix_hyd.append(i)
                if is_snow:
                    snow_hyd[entry.layer] = i
                else:
                    soil_hyd[entry.layer - n_snow] = i
                if stype.is_matric:
                    ix_mat.append(i)
                    ix_matric.append(entry.layer - n_snow)

        return cls(
            n_snow=n_snow,
            n_soil=n_soil,
            state_types=[e.state_type for e in entries],
            ix_cas_nrg=singles.get(StateType.NRG_CANAIR),
            ix_veg_nrg=singles.get(StateType.NRG_CANOPY),
            ix_veg_hyd=singles.get(StateType.WAT_CANOPY),
            ix_aq_wat=singles.get(StateType.WAT_AQUIFER),
            ix_nrg_only=np.asarray(ix_nrg, dtype=int),
            ix_hyd_only=np.asarray(ix_hyd, dtype=int),
            ix_mat_only=np.asarray(ix_mat, dtype=int),
            ix_matric_head=np.asarray(ix_matric, dtype=int),
            ix_snow_only_nrg=snow_nrg,
            ix_snow_only_hyd=snow_hyd,
            ix_soil_only_nrg=soil_nrg,
            ix_soil_only_hyd=soil_hyd,
        )


@dataclass
class LayerState:
    """Model state at the start of the step that constraints and checks read"""
    layer_depth: np.ndarray  # m, snow then soil layers
    layer_temp: np.ndarray  # K, snow then soil layers
    layer_matric_head: np.ndarray  # m, soil layers only
    snowfrz_scale: float = 50.0  # K-1, snow freezing curve parameter


@dataclass
class Evaluation:
    """Result of one flux/residual evaluation"""
    flux: np.ndarray
    residual: ResidualVector
    objective: float
    feasible: bool = True
    sink: Optional[np.ndarray] = None


@dataclass
class JacobianResult:
    """Analytic Jacobian and the updated diagonal (mass matrix) term"""
    matrix: JacobianMatrix
    diagonal: np.ndarray


# Protocol definitions for the external collaborators
@runtime_checkable
class FluxEvaluator(Protocol):
    """Maps a state vector to fluxes, residuals and the objective"""

    def evaluate(self, state_vector: StateVector, first_flux_call: bool) -> Evaluation:
        """Evaluate fluxes and residuals at a trial state"""
        ...


@runtime_checkable
class JacobianBuilder(Protocol):
    """Builds the analytic Jacobian from cached flux derivatives"""

    def build(self, context, layout: MatrixLayout, diagonal: np.ndarray) -> JacobianResult:
        """Return the Jacobian in the requested layout"""
        ...


@runtime_checkable
class LinearAlgebraBackend(Protocol):
    """Scaling, factorize-and-solve and gradient of the linear system"""

    def scale_matrix(self, layout: MatrixLayout, jacobian: JacobianMatrix,
                     row_scale: np.ndarray, col_scale: np.ndarray) -> JacobianMatrix:
        ...

    def solve(self, layout: MatrixLayout, jacobian: JacobianMatrix, rhs: np.ndarray) -> np.ndarray:
        ...

    def gradient(self, layout: MatrixLayout, jacobian: JacobianMatrix, residual: np.ndarray) -> np.ndarray:
        ...
