"""Static input tables with composite keys and bounds-checked access.

Every table is a read-only NumPy array whose axes are enumerated indices
(condition, CD4 stratum, gender, age category, stage, TB state, ...).
TABLE_SCHEMA fixes the shape and the neutral default of each table; a
table that is not supplied is filled with its default, which is chosen so
that it has no effect (zero probability, unit ratio, zero cost).

Lookups go through get(), which checks each index against its axis and
raises IndexError instead of letting NumPy wrap negative indices.

Tables are stored as a compressed .npz archive (save_tables/load_tables),
one array per table name.
"""

from __future__ import annotations

import warnings
from pathlib import Path
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

import numpy as np

from hivtb_microsim.types import (
    MAX_AGE_YEARS,
    N_CD4_STRATA,
    N_CONDITION_AGE_CATS,
    N_CONDITION_STAGES,
    N_CONDITIONS,
    N_DEATH_CAUSES,
    N_DEPENDENT_AGE_CATS,
    N_GENDERS,
    N_RISK_FACTORS,
    N_TB_SITES,
    N_TB_STATES,
    N_TB_STRAINS,
    N_TB_TRACKERS,
    N_TB_TREATMENT_LINES,
    CD4Stratum,
    Gender,
)


# ═══════════════════════════════════════════════════════════════════════
# SCHEMA
# ═══════════════════════════════════════════════════════════════════════

C, S, G, A, R, K = (N_CONDITIONS, N_CD4_STRATA, N_GENDERS,
                    N_CONDITION_AGE_CATS, N_RISK_FACTORS, N_CONDITION_STAGES)
T, L = N_TB_STATES, N_TB_TREATMENT_LINES

_DEFAULT_AGE_BOUNDS = [20.0, 30.0, 40.0, 50.0, 60.0, 70.0]


def _one_hot(n: int, shape: Tuple[int, ...]) -> Callable[[], np.ndarray]:
    def make() -> np.ndarray:
        arr = np.zeros(shape)
        arr[..., n] = 1.0
        return arr
    return make


Default = Union[float, Callable[[], np.ndarray]]

TABLE_SCHEMA: Dict[str, Tuple[Tuple[int, ...], Default]] = {
    # --- Comorbidities ---
    'condition_age_bounds_years':   ((C, A - 1), lambda: np.tile(_DEFAULT_AGE_BOUNDS, (C, 1))),
    'prevalence_hiv_neg':           ((C, G, A), 0.0),
    'prevalence_hiv_pos':           ((C, S, G, A), 0.0),
    'incidence_hiv_neg':            ((C, G, A), 0.0),
    'incidence_hiv_pos':            ((C, S, G, A), 0.0),
    'prevalence_risk_logit':        ((C, R), 0.0),
    'incidence_risk_logit':         ((C, R), 0.0),
    'art_incidence_multiplier':     ((C, S), 1.0),
    'history_logit':                ((C, C), 0.0),   # [condition, prior condition]
    'onset_months_mean':            ((C,), 0.0),
    'onset_months_sd':              ((C,), 0.0),
    'dependent_onset_months':       ((C, N_DEPENDENT_AGE_CATS), 0.0),
    'stage_duration_mean':          ((K - 1, C), -1.0),  # < 0: stage never reached
    'stage_duration_sd':            ((K - 1, C), 0.0),
    'stage_cost':                   ((C, K, G, A), 0.0),
    'stage_qol_modifier':           ((C, K, G, A), 0.0),
    'stage_death_rate_ratio':       ((C, K, G, A), 1.0),
    'risk_factor_incidence':        ((R,), 0.0),
    'multiple_condition_qol':       ((C - 1,), 0.0),  # index = condition count − 2
    # --- Mortality ---
    'background_mortality':         ((G, MAX_AGE_YEARS + 1), 0.0),  # monthly probability
    'hiv_death_rate_ratio':         ((S,), 1.0),
    'art_death_rate_ratio':         ((S,), 1.0),
    'risk_factor_death_rate_ratio': ((R,), 1.0),
    'death_cost':                   ((N_DEATH_CAUSES,), 0.0),
    # --- TB natural history ---
    'tb_age_bounds_years':          ((A - 1,), lambda: np.array(_DEFAULT_AGE_BOUNDS)),
    'tb_entry_state_hiv_neg':       ((T,), _one_hot(0, (T,))),
    'tb_entry_state_hiv_pos':       ((S, T), _one_hot(0, (S, T))),
    'tb_entry_strain':              ((N_TB_STRAINS,), _one_hot(0, (N_TB_STRAINS,))),
    'tb_entry_tracker_prob':        ((T, N_TB_TRACKERS), 0.0),
    'tb_infection_prob':            ((A,), 0.0),
    'tb_infection_multiplier':      ((T,), 1.0),
    'tb_infection_strain':          ((N_TB_STRAINS,), _one_hot(0, (N_TB_STRAINS,))),
    'tb_activation_prob_hiv_neg':   ((2,), 0.0),     # [recent, remote]
    'tb_activation_prob_hiv_pos':   ((S, 2), 0.0),
    'tb_activation_risk_logit':     ((R,), 0.0),
    'tb_prob_pulmonary_hiv_pos':    ((S,), 0.8),
    'tb_symptom_prob_hiv_neg':      ((T,), 0.0),
    'tb_symptom_prob_hiv_pos':      ((S, T), 0.0),
    'tb_relapse_cd4_multiplier':    ((S,), 1.0),
    'tb_death_rate_ratio_hiv_neg':  ((N_TB_SITES,), 1.0),
    'tb_death_rate_ratio_hiv_pos':  ((S, N_TB_SITES), 1.0),
    # --- TB clinical ---
    'tb_ltfu_prob':                 ((T,), 0.0),
    'tb_rtc_prob':                  ((T,), 0.0),
    'tb_treatment_success':         ((L, N_TB_STRAINS), 1.0),
    'tb_treatment_duration':        ((L,), lambda: np.array([6.0, 18.0, 24.0])),
    'tb_treatment_visit_cost':      ((L,), 0.0),
    'tb_treatment_med_cost':        ((L,), 0.0),
    'tb_resistance_increase_prob':  ((L,), 0.0),
}

# Tables whose entries may legitimately be negative
SIGNED_TABLES = frozenset({
    'prevalence_risk_logit', 'incidence_risk_logit', 'history_logit',
    'tb_activation_risk_logit', 'stage_qol_modifier', 'multiple_condition_qol',
    'stage_duration_mean',
})


def neutral_array(name: str) -> np.ndarray:
    """Fresh writable copy of a table's default contents."""
    shape, default = TABLE_SCHEMA[name]
    if callable(default):
        return np.array(default(), dtype=np.float64).reshape(shape)
    return np.full(shape, default, dtype=np.float64)


# ═══════════════════════════════════════════════════════════════════════
# COMPOSITE KEYS
# ═══════════════════════════════════════════════════════════════════════

class StrataKey(NamedTuple):
    """Patient strata shared by most lookups. cd4 is None for HIV-negative."""
    cd4: Optional[CD4Stratum]
    gender: Gender
    age_category: int


class StageKey(NamedTuple):
    condition: int
    stage: int
    gender: Gender
    age_category: int


class StageOutcome(NamedTuple):
    cost: float
    qol_modifier: float
    death_rate_ratio: float


# ═══════════════════════════════════════════════════════════════════════
# INPUT TABLES
# ═══════════════════════════════════════════════════════════════════════

class InputTables:
    """Read-only container for every table in TABLE_SCHEMA.

    Args:
        **arrays: Table name → array-like. Missing tables take their
            neutral default.

    Raises:
        KeyError: Unknown table name.
        ValueError: Shape mismatch or negative entries in an unsigned table.
    """

    def __init__(self, **arrays):
        unknown = set(arrays) - set(TABLE_SCHEMA)
        if unknown:
            raise KeyError(f"Unknown tables: {sorted(unknown)}")
        self._arrays: Dict[str, np.ndarray] = {}
        for name, (shape, _) in TABLE_SCHEMA.items():
            if name in arrays:
                arr = np.array(arrays[name], dtype=np.float64)
            else:
                arr = neutral_array(name)
            if arr.shape != shape:
                raise ValueError(
                    f"Table '{name}' must have shape {shape}, got {arr.shape}"
                )
            if name not in SIGNED_TABLES and np.any(arr < 0):
                raise ValueError(f"Table '{name}' has negative entries")
            arr.setflags(write=False)
            self._arrays[name] = arr
        self._check_bounds('condition_age_bounds_years')
        self._check_bounds('tb_age_bounds_years')

    def _check_bounds(self, name: str) -> None:
        if np.any(np.diff(self._arrays[name], axis=-1) <= 0):
            raise ValueError(f"Table '{name}' must be strictly increasing")

    def __getattr__(self, name: str) -> np.ndarray:
        arrays = self.__dict__.get('_arrays')
        if arrays is not None and name in arrays:
            return arrays[name]
        raise AttributeError(name)

    def replace(self, **arrays) -> 'InputTables':
        """New InputTables with some tables swapped out."""
        merged = dict(self._arrays)
        merged.update(arrays)
        return InputTables(**merged)

    def as_dict(self) -> Dict[str, np.ndarray]:
        return dict(self._arrays)

    # ── Bounds-checked access ────────────────────────────────────────

    def get(self, name: str, *index: int) -> float:
        """Scalar lookup with every index checked against its axis.

        Raises:
            IndexError: Wrong number of indices or an index out of range.
        """
        arr = self._arrays[name]
        if len(index) != arr.ndim:
            raise IndexError(
                f"Table '{name}' needs {arr.ndim} indices, got {len(index)}"
            )
        for axis, (i, n) in enumerate(zip(index, arr.shape)):
            if i is None or not 0 <= int(i) < n:
                raise IndexError(
                    f"Table '{name}' axis {axis}: index {i} out of range [0, {n})"
                )
        return float(arr[tuple(int(i) for i in index)])

    def row(self, name: str, *index: int) -> np.ndarray:
        """Bounds-checked slice along the leading axes (read-only view)."""
        arr = self._arrays[name]
        for axis, (i, n) in enumerate(zip(index, arr.shape)):
            if i is None or not 0 <= int(i) < n:
                raise IndexError(
                    f"Table '{name}' axis {axis}: index {i} out of range [0, {n})"
                )
        return arr[tuple(int(i) for i in index)]

    # ── Age categories ───────────────────────────────────────────────

    def condition_age_category(self, condition: int, age_years: float) -> int:
        bounds = self.row('condition_age_bounds_years', condition)
        return int(np.searchsorted(bounds, age_years, side='left'))

    def tb_age_category(self, age_years: float) -> int:
        return int(np.searchsorted(self._arrays['tb_age_bounds_years'],
                                   age_years, side='left'))

    # ── Comorbidity lookups ──────────────────────────────────────────

    def condition_probability(self, kind: str, condition: int,
                              strata: StrataKey) -> float:
        """Prevalence or incidence for one condition and patient strata.

        Args:
            kind: 'prevalence' or 'incidence'.
            condition: Condition index.
            strata: StrataKey; cd4 None selects the HIV-negative table.
        """
        if strata.cd4 is None:
            return self.get(f'{kind}_hiv_neg', condition,
                            strata.gender, strata.age_category)
        return self.get(f'{kind}_hiv_pos', condition, strata.cd4,
                        strata.gender, strata.age_category)

    def risk_factor_logits(self, kind: str, condition: int,
                           risk_factors: Iterable[bool]) -> List[float]:
        """Logit deltas for every risk factor the patient has."""
        table = f'{kind}_risk_logit'
        return [self.get(table, condition, r)
                for r, present in enumerate(risk_factors) if present]

    def stage_outcome(self, key: StageKey) -> StageOutcome:
        return StageOutcome(
            cost=self.get('stage_cost', *key),
            qol_modifier=self.get('stage_qol_modifier', *key),
            death_rate_ratio=self.get('stage_death_rate_ratio', *key),
        )


# ═══════════════════════════════════════════════════════════════════════
# PERSISTENCE
# ═══════════════════════════════════════════════════════════════════════

def save_tables(tables: InputTables, path: Union[str, Path]) -> None:
    """Save every table to a compressed npz file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(path, **tables.as_dict())


def load_tables(path: Union[str, Path]) -> InputTables:
    """Load tables from an npz file.

    Tables absent from the file take their neutral default; unknown
    arrays are ignored with a warning.

    Raises:
        FileNotFoundError: If path doesn't exist.
        ValueError: If a table has the wrong shape or invalid values.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Table file not found: {path}")
    with np.load(path) as data:
        arrays = {name: data[name] for name in data.files}
    unknown = sorted(set(arrays) - set(TABLE_SCHEMA))
    if unknown:
        warnings.warn(
            f"Ignoring unknown tables in {path}: {unknown}",
            UserWarning,
            stacklevel=2,
        )
        for name in unknown:
            del arrays[name]
    return InputTables(**arrays)
