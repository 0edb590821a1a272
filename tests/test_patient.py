"""Tests for hivtb_microsim.patient — aggregate invariants and mutation primitives."""

import numpy as np
import pytest

from hivtb_microsim.patient import (
    Patient,
    PatientStateError,
    accumulate_qol_modifier,
    add_mortality_risk,
    clear_conditions,
    clear_mortality_risks,
    current_stage,
    increment_cost,
    set_condition_state,
    set_risk_factor,
    set_stage_starts,
    set_tb_ltfu,
    set_tb_rtc,
)
from hivtb_microsim.types import (
    NO_MONTH,
    CD4Stratum,
    CostCategory,
    DeathCause,
    Gender,
    TBCareState,
)


@pytest.fixture
def patient() -> Patient:
    p = Patient(patient_id=1, gender=Gender.FEMALE, age_months=480)
    p.month = 10
    return p


# ── Condition state tests ─────────────────────────────────────────────

class TestSetConditionState:
    def test_new_onset_defaults_to_current_month(self, patient):
        set_condition_state(patient, 2, True, is_new_onset=True)
        assert patient.has_condition[2]
        assert patient.condition_stage_start[2, 0] == 10
        assert list(patient.condition_stage_start[2, 1:]) == [NO_MONTH, NO_MONTH]

    def test_onset_before_entry_clamped_to_zero(self, patient):
        set_condition_state(patient, 0, True, is_new_onset=True, onset_month=-40)
        assert patient.condition_stage_start[0, 0] == 0

    def test_onset_after_current_month_rejected(self, patient):
        with pytest.raises(PatientStateError):
            set_condition_state(patient, 0, True, is_new_onset=True, onset_month=11)

    def test_present_condition_never_cleared(self, patient):
        set_condition_state(patient, 3, True, is_new_onset=True)
        with pytest.raises(PatientStateError):
            set_condition_state(patient, 3, False)

    def test_setting_present_again_keeps_history(self, patient):
        set_condition_state(patient, 3, True, is_new_onset=True, onset_month=4)
        set_condition_state(patient, 3, True, is_new_onset=True)
        assert patient.condition_stage_start[3, 0] == 4

    def test_clear_absent_is_noop(self, patient):
        set_condition_state(patient, 5, False)
        assert not patient.has_condition[5]

    def test_clear_conditions(self, patient):
        set_condition_state(patient, 1, True, is_new_onset=True)
        clear_conditions(patient)
        assert patient.n_conditions == 0
        assert np.all(patient.condition_stage_start == NO_MONTH)


class TestStages:
    def test_stage_starts_recorded(self, patient):
        set_condition_state(patient, 0, True, is_new_onset=True, onset_month=2)
        set_stage_starts(patient, 0, [5, 9])
        assert list(patient.condition_stage_start[0]) == [2, 5, 9]

    def test_decreasing_starts_rejected(self, patient):
        set_condition_state(patient, 0, True, is_new_onset=True, onset_month=6)
        with pytest.raises(PatientStateError):
            set_stage_starts(patient, 0, [4, 9])

    def test_unreached_stage_blocks_later_stages(self, patient):
        set_condition_state(patient, 0, True, is_new_onset=True, onset_month=2)
        set_stage_starts(patient, 0, [NO_MONTH, 8])
        assert list(patient.condition_stage_start[0, 1:]) == [NO_MONTH, NO_MONTH]

    def test_absent_condition_rejected(self, patient):
        with pytest.raises(PatientStateError):
            set_stage_starts(patient, 4, [1, 2])

    def test_current_stage(self, patient):
        set_condition_state(patient, 0, True, is_new_onset=True, onset_month=2)
        set_stage_starts(patient, 0, [8, 20])
        assert current_stage(patient, 0) == 1
        patient.month = 20
        assert current_stage(patient, 0) == 2

    def test_current_stage_without_onset_raises(self, patient):
        patient.has_condition[7] = True
        with pytest.raises(PatientStateError):
            current_stage(patient, 7)


# ── Risk factor tests ─────────────────────────────────────────────────

class TestRiskFactors:
    def test_switch_on(self, patient):
        set_risk_factor(patient, 2)
        assert patient.risk_factors[2]

    def test_switch_off_rejected(self, patient):
        set_risk_factor(patient, 2)
        with pytest.raises(PatientStateError):
            set_risk_factor(patient, 2, False)


# ── Mortality, cost, QOL tests ────────────────────────────────────────

class TestMortalityRisks:
    def test_register(self, patient):
        add_mortality_risk(patient, DeathCause.HIV, 2.5, death_cost=100.0)
        risk = patient.mortality_risks[0]
        assert risk.cause == DeathCause.HIV
        assert risk.rate_ratio == 2.5
        assert risk.death_cost == 100.0

    @pytest.mark.parametrize("ratio", [1.0, 0.5, 0.0])
    def test_no_excess_rejected(self, patient, ratio):
        with pytest.raises(ValueError):
            add_mortality_risk(patient, DeathCause.HIV, ratio)
        assert patient.mortality_risks == []

    def test_clear(self, patient):
        add_mortality_risk(patient, DeathCause.ACTIVE_TB, 3.0)
        clear_mortality_risks(patient)
        assert patient.mortality_risks == []


class TestAccumulators:
    def test_costs(self, patient):
        increment_cost(patient, CostCategory.COMORBIDITY, 40.0, condition=3)
        increment_cost(patient, CostCategory.CD4_TEST, 20.0)
        assert patient.costs[CostCategory.COMORBIDITY] == 40.0
        assert patient.condition_costs[3] == 40.0
        assert patient.total_cost == 60.0

    def test_qol(self, patient):
        accumulate_qol_modifier(patient, -0.1)
        accumulate_qol_modifier(patient, -0.05)
        assert patient.qol_modifier == pytest.approx(-0.15)
        assert patient.month_qol_modifier == pytest.approx(-0.15)


class TestTBCare:
    def test_ltfu_and_return(self, patient):
        set_tb_ltfu(patient)
        assert patient.tb.care_state == TBCareState.LTFU
        assert patient.tb.month_of_ltfu == 10
        set_tb_rtc(patient)
        assert patient.tb.care_state == TBCareState.IN_CARE
        assert patient.tb.month_of_ltfu == NO_MONTH


class TestPatientProperties:
    def test_cd4_key(self, patient):
        patient.cd4_stratum = CD4Stratum.LO
        assert patient.cd4_key is None
        patient.hiv_positive = True
        assert patient.cd4_key == CD4Stratum.LO

    def test_age_years(self, patient):
        assert patient.age_years == 40.0
