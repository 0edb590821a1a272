"""Patient aggregate and the shared state-mutation primitives.

A Patient is owned by the monthly loop for one simulated life. Updaters
read it freely but change comorbidity state, risk factors, mortality
hazards, costs and QOL only through the functions in this module, which
enforce the aggregate's invariants:

  - A present condition has a defined stage-0 start month ≤ current month
  - Stage-start months are non-decreasing with stage index
  - A present condition is never cleared by set_condition_state()
  - Risk factors only switch on
  - Registered mortality hazard ratios exceed 1.0

Violations are programming defects and raise immediately.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from hivtb_microsim.types import (
    N_CONDITION_STAGES,
    N_CONDITIONS,
    N_RISK_FACTORS,
    N_TB_TRACKERS,
    NO_MONTH,
    CD4Stratum,
    CostCategory,
    DeathCause,
    Gender,
    LTFUState,
    ResponseCategory,
    TBCareState,
    TBState,
    TBStrain,
    TBTracker,
)


class PatientStateError(RuntimeError):
    """A patient invariant was violated."""


# ═══════════════════════════════════════════════════════════════════════
# RECORDS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class MortalityRisk:
    """One cause-specific excess hazard registered for the current month."""
    cause: DeathCause
    rate_ratio: float
    death_cost: float = 0.0


@dataclass
class TBRecord:
    """TB natural history and clinical-management state."""
    # Natural history
    state: TBState = TBState.UNINFECTED
    strain: TBStrain = TBStrain.DS
    trackers: np.ndarray = field(
        default_factory=lambda: np.zeros(N_TB_TRACKERS, dtype=bool)
    )
    ever_infected: bool = False
    is_self_cured: bool = False
    self_cure_month: int = NO_MONTH
    month_of_infection: int = NO_MONTH
    month_of_activation: int = NO_MONTH
    month_of_treatment_stop: int = NO_MONTH
    # Clinical management
    care_state: TBCareState = TBCareState.UNLINKED
    month_of_ltfu: int = NO_MONTH
    month_of_last_test: int = NO_MONTH
    test_result_month: int = NO_MONTH       # Pending diagnostic pickup
    test_result_positive: bool = False
    dst_result_month: int = NO_MONTH        # Pending DST pickup
    observed_strain: Optional[TBStrain] = None
    on_treatment: bool = False
    on_empiric: bool = False
    treatment_line: int = 0
    month_treatment_start: int = NO_MONTH
    n_treatments: int = 0
    ever_defaulted: bool = False
    on_proph: bool = False
    proph_scheduled_month: int = NO_MONTH
    month_proph_start: int = NO_MONTH
    n_proph_starts: int = 0

    def has(self, tracker: TBTracker) -> bool:
        return bool(self.trackers[tracker])

    def set_tracker(self, tracker: TBTracker, value: bool) -> None:
        self.trackers[tracker] = value

    @property
    def is_active(self) -> bool:
        return TBState(self.state).is_active


@dataclass
class CareRecord:
    """HIV care engagement, ART and CD4 monitoring."""
    in_hiv_care: bool = False
    ltfu_state: LTFUState = LTFUState.NEVER_LOST
    month_of_ltfu_change: int = NO_MONTH
    response_base_logit: float = 0.0
    art_effect_applies: bool = False
    month_art_start: int = NO_MONTH
    response_factors: np.ndarray = field(
        default_factory=lambda: np.ones(len(ResponseCategory))
    )
    observed_cd4: Optional[float] = None
    next_cd4_test_month: int = NO_MONTH
    repeat_cd4_test_month: int = NO_MONTH
    peak_observed_cd4: float = 0.0
    failed_cd4_tests: int = 0
    art_failure_diagnosed: bool = False
    cd4_monitoring_stopped: bool = False

    def response_factor(self, category: ResponseCategory) -> float:
        return float(self.response_factors[category])


@dataclass
class Patient:
    """Mutable per-individual aggregate read and written by all updaters."""
    # --- General ---
    patient_id: int
    gender: Gender
    age_months: int
    month: int = 0
    risk_factors: np.ndarray = field(
        default_factory=lambda: np.zeros(N_RISK_FACTORS, dtype=bool)
    )
    trace_enabled: bool = False
    alive: bool = True
    cause_of_death: Optional[DeathCause] = None
    month_of_death: int = NO_MONTH

    # --- Disease ---
    hiv_positive: bool = False
    true_cd4: float = 0.0
    cd4_stratum: CD4Stratum = CD4Stratum.VHI
    has_acute_oi: bool = False          # Set by the caller; no updater here models OIs
    has_condition: np.ndarray = field(
        default_factory=lambda: np.zeros(N_CONDITIONS, dtype=bool)
    )
    condition_stage_start: np.ndarray = field(
        default_factory=lambda: np.full((N_CONDITIONS, N_CONDITION_STAGES),
                                        NO_MONTH, dtype=np.int64)
    )
    tb: TBRecord = field(default_factory=TBRecord)

    # --- Treatment / care ---
    care: CareRecord = field(default_factory=CareRecord)

    # --- Accumulators ---
    condition_costs: np.ndarray = field(
        default_factory=lambda: np.zeros(N_CONDITIONS)
    )
    costs: np.ndarray = field(
        default_factory=lambda: np.zeros(len(CostCategory))
    )
    qol_modifier: float = 0.0          # Lifetime running total
    month_qol_modifier: float = 0.0    # Current month only
    mortality_risks: List[MortalityRisk] = field(default_factory=list)

    @property
    def age_years(self) -> float:
        return self.age_months / 12.0

    @property
    def total_cost(self) -> float:
        return float(self.costs.sum())

    @property
    def n_conditions(self) -> int:
        return int(self.has_condition.sum())

    @property
    def cd4_key(self) -> Optional[CD4Stratum]:
        """CD4 stratum for table lookups; None for HIV-negative patients."""
        return self.cd4_stratum if self.hiv_positive else None


# ═══════════════════════════════════════════════════════════════════════
# COMORBIDITY PRIMITIVES
# ═══════════════════════════════════════════════════════════════════════

def set_condition_state(patient: Patient, condition: int, present: bool,
                        is_new_onset: bool = False,
                        onset_month: Optional[int] = None) -> None:
    """Set a condition's has-condition flag.

    On a new onset, stage 0 starts at onset_month (default: current month,
    clamped to ≥ 0) and later stages are cleared for the caller to
    schedule. Re-setting a present condition keeps its history.

    Raises:
        PatientStateError: Clearing a present condition, or an onset
            month later than the current month.
    """
    if not present:
        if patient.has_condition[condition]:
            raise PatientStateError(
                f"patient {patient.patient_id}: condition {condition} "
                f"cannot be cleared once present"
            )
        return
    if patient.has_condition[condition]:
        return
    patient.has_condition[condition] = True
    if is_new_onset:
        month = patient.month if onset_month is None else onset_month
        if month > patient.month:
            raise PatientStateError(
                f"patient {patient.patient_id}: onset month {month} is after "
                f"current month {patient.month}"
            )
        patient.condition_stage_start[condition, :] = NO_MONTH
        patient.condition_stage_start[condition, 0] = max(0, month)


def set_stage_starts(patient: Patient, condition: int,
                     stage_starts: List[int]) -> None:
    """Record the start months of stages 1.. for a present condition.

    NO_MONTH marks a stage that is never reached; every later stage is
    then unreachable too.

    Raises:
        PatientStateError: Condition absent or starts decreasing.
    """
    if not patient.has_condition[condition]:
        raise PatientStateError(
            f"patient {patient.patient_id}: condition {condition} not present"
        )
    previous = int(patient.condition_stage_start[condition, 0])
    reached = True
    for stage, start in enumerate(stage_starts, start=1):
        if start == NO_MONTH or not reached:
            reached = False
            patient.condition_stage_start[condition, stage] = NO_MONTH
            continue
        if start < previous:
            raise PatientStateError(
                f"patient {patient.patient_id}: condition {condition} stage "
                f"{stage} starts at {start}, before stage {stage - 1} ({previous})"
            )
        patient.condition_stage_start[condition, stage] = start
        previous = start


def clear_conditions(patient: Patient) -> None:
    """Reset every condition; only valid before the first monthly step."""
    patient.has_condition[:] = False
    patient.condition_stage_start[:] = NO_MONTH


def current_stage(patient: Patient, condition: int) -> int:
    """Latest stage whose start month is ≤ the current month.

    Raises:
        PatientStateError: Present condition without a valid stage-0 start.
    """
    starts = patient.condition_stage_start[condition]
    if starts[0] == NO_MONTH or starts[0] > patient.month:
        raise PatientStateError(
            f"patient {patient.patient_id}: condition {condition} is present "
            f"without an onset month ≤ {patient.month}"
        )
    for stage in range(N_CONDITION_STAGES - 1, -1, -1):
        if starts[stage] != NO_MONTH and starts[stage] <= patient.month:
            return stage
    return 0


def set_risk_factor(patient: Patient, risk_factor: int, present: bool = True) -> None:
    """Switch a risk factor on. Switching one off is a defect."""
    if not present and patient.risk_factors[risk_factor]:
        raise PatientStateError(
            f"patient {patient.patient_id}: risk factor {risk_factor} "
            f"cannot be cleared"
        )
    if present:
        patient.risk_factors[risk_factor] = True


# ═══════════════════════════════════════════════════════════════════════
# MORTALITY, COST AND QOL PRIMITIVES
# ═══════════════════════════════════════════════════════════════════════

def add_mortality_risk(patient: Patient, cause: DeathCause, rate_ratio: float,
                       death_cost: float = 0.0) -> None:
    """Register a cause-specific excess hazard for the current month.

    Raises:
        ValueError: rate_ratio ≤ 1.0 (no excess hazard to register).
    """
    if not rate_ratio > 1.0:
        raise ValueError(
            f"mortality hazard for {DeathCause(cause).name} must exceed 1.0, "
            f"got {rate_ratio}"
        )
    patient.mortality_risks.append(
        MortalityRisk(cause=DeathCause(cause), rate_ratio=float(rate_ratio),
                      death_cost=float(death_cost))
    )


def clear_mortality_risks(patient: Patient) -> None:
    patient.mortality_risks.clear()


def set_tb_ltfu(patient: Patient) -> None:
    """Patient drops out of TB care this month."""
    patient.tb.care_state = TBCareState.LTFU
    patient.tb.month_of_ltfu = patient.month


def set_tb_rtc(patient: Patient) -> None:
    """Patient returns to TB care this month."""
    patient.tb.care_state = TBCareState.IN_CARE
    patient.tb.month_of_ltfu = NO_MONTH


def increment_cost(patient: Patient, category: CostCategory, amount: float,
                   condition: Optional[int] = None) -> None:
    """Add to a cost bucket (and to a condition's total when given)."""
    patient.costs[category] += amount
    if condition is not None:
        patient.condition_costs[condition] += amount


def accumulate_qol_modifier(patient: Patient, amount: float) -> None:
    patient.qol_modifier += amount
    patient.month_qol_modifier += amount
