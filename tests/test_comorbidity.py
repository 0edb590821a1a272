"""Tests for hivtb_microsim.comorbidity — prevalence, incidence and staging."""

import numpy as np
import pytest

from hivtb_microsim import rng as streams
from hivtb_microsim.comorbidity import ComorbidityUpdater
from hivtb_microsim.config import default_config
from hivtb_microsim.context import SimContext
from hivtb_microsim.patient import Patient, set_condition_state, set_stage_starts
from hivtb_microsim.probability import prob_rate_multiply
from hivtb_microsim.rng import FixedSequenceSource
from hivtb_microsim.tables import InputTables, neutral_array
from hivtb_microsim.trace import Tracer
from hivtb_microsim.types import (
    NO_MONTH,
    CD4Stratum,
    CostCategory,
    DeathCause,
    Gender,
)

AGE_CAT = 2  # 37.5 years with the default bounds


def make_patient(hiv_positive=True) -> Patient:
    return Patient(patient_id=0, gender=Gender.FEMALE, age_months=450,
                   hiv_positive=hiv_positive, cd4_stratum=CD4Stratum.LO)


def make_updater(tables=None, rng=None, **comorbidity) -> ComorbidityUpdater:
    config = default_config()
    for key, value in comorbidity.items():
        setattr(config.comorbidity, key, value)
    ctx = SimContext(config=config, tables=tables or InputTables(),
                     rng=rng or FixedSequenceSource())
    return ComorbidityUpdater(ctx)


def certain_prevalence(*conditions):
    table = neutral_array('prevalence_hiv_pos')
    for c in conditions:
        table[c] = 1.0
    return table


def certain_incidence(*conditions):
    table = neutral_array('incidence_hiv_pos')
    for c in conditions:
        table[c] = 1.0
    return table


# ── Initialization tests ──────────────────────────────────────────────

class TestPrevalence:
    def test_prevalent_condition_staged_from_true_onset(self):
        mean = neutral_array('onset_months_mean')
        mean[0] = 30.0
        duration = neutral_array('stage_duration_mean')
        duration[0, 0] = 12.0
        duration[1, 0] = 50.0
        tables = InputTables(prevalence_hiv_pos=certain_prevalence(0),
                             onset_months_mean=mean, stage_duration_mean=duration)
        patient = make_patient()
        make_updater(tables).perform_initial_updates(patient)

        assert patient.has_condition[0]
        assert patient.n_conditions == 1
        # true onset −30: stage 1 at −18 clamps to 0, stage 2 at 32
        assert list(patient.condition_stage_start[0]) == [0, 0, 32]

    def test_hiv_negative_uses_negative_table(self):
        neg = neutral_array('prevalence_hiv_neg')
        neg[4, Gender.FEMALE, AGE_CAT] = 1.0
        tables = InputTables(prevalence_hiv_neg=neg,
                             prevalence_hiv_pos=certain_prevalence(5))
        patient = make_patient(hiv_positive=False)
        make_updater(tables).perform_initial_updates(patient)
        assert list(np.flatnonzero(patient.has_condition)) == [4]

    def test_risk_factor_logit_applied(self):
        prev = neutral_array('prevalence_hiv_pos')
        prev[1] = 0.1
        logits = neutral_array('prevalence_risk_logit')
        logits[1, 0] = 10.0
        tables = InputTables(prevalence_hiv_pos=prev, prevalence_risk_logit=logits)

        plain = make_patient()
        make_updater(tables).perform_initial_updates(plain)
        assert not plain.has_condition[1]

        exposed = make_patient()
        exposed.risk_factors[0] = True
        make_updater(tables).perform_initial_updates(exposed)
        assert exposed.has_condition[1]

    def test_disabled_module_does_nothing(self):
        tables = InputTables(prevalence_hiv_pos=certain_prevalence(0))
        rng = FixedSequenceSource()
        patient = make_patient()
        make_updater(tables, rng, enabled=False).perform_initial_updates(patient)
        assert patient.n_conditions == 0
        assert rng.calls == []

    def test_dependent_onset_stops_at_first_missing(self):
        onset = neutral_array('dependent_onset_months')
        onset[:] = 6.0
        rng = FixedSequenceSource()
        tables = InputTables(prevalence_hiv_pos=certain_prevalence(0, 2),
                             dependent_onset_months=onset)
        patient = make_patient()
        make_updater(tables, rng, dependent_onset=True).perform_initial_updates(patient)

        assert list(np.flatnonzero(patient.has_condition)) == [0]
        assert rng.count(streams.CONDITION_PREVALENCE) == 2
        assert rng.count(streams.CONDITION_ONSET) == 0

    def test_trace_message(self, caplog):
        mean = neutral_array('onset_months_mean')
        mean[3] = 7.0
        config = default_config()
        ctx = SimContext(config=config,
                         tables=InputTables(prevalence_hiv_pos=certain_prevalence(3),
                                            onset_months_mean=mean),
                         rng=FixedSequenceSource(), tracer=Tracer(level=1))
        patient = make_patient()
        patient.trace_enabled = True
        with caplog.at_level('INFO', logger='hivtb_microsim.trace'):
            ComorbidityUpdater(ctx).perform_initial_updates(patient)
        assert "  0 PREVALENT COMORBIDITY 4, 7 months since onset;" in caplog.messages


# ── Staging tests ─────────────────────────────────────────────────────

class TestStageDurations:
    def test_negative_mean_never_reached(self):
        duration = neutral_array('stage_duration_mean')
        duration[0, 2] = 5.0
        tables = InputTables(incidence_hiv_pos=certain_incidence(2),
                             stage_duration_mean=duration)
        patient = make_patient()
        patient.month = 4
        make_updater(tables).perform_monthly_updates(patient)
        assert list(patient.condition_stage_start[2]) == [4, 9, NO_MONTH]

    def test_sqrt_transform(self):
        duration = neutral_array('stage_duration_mean')
        duration[:, 0] = 3.0
        tables = InputTables(incidence_hiv_pos=certain_incidence(0),
                             stage_duration_mean=duration)
        patient = make_patient()
        patient.month = 1
        make_updater(tables, stage_duration_sqrt_transform=True).perform_monthly_updates(patient)
        assert list(patient.condition_stage_start[0]) == [1, 10, 19]

    def test_stage_starts_non_decreasing(self):
        duration = neutral_array('stage_duration_mean')
        duration[:] = 4.0
        sd = neutral_array('stage_duration_sd')
        sd[:] = 10.0
        rng = FixedSequenceSource(by_stream={
            streams.CONDITION_STAGE_DURATION: [0.01, 0.99, 0.01, 0.3]})
        tables = InputTables(incidence_hiv_pos=certain_incidence(0, 1),
                             stage_duration_mean=duration, stage_duration_sd=sd)
        patient = make_patient()
        patient.month = 3
        make_updater(tables, rng).perform_monthly_updates(patient)
        for c in (0, 1):
            starts = patient.condition_stage_start[c]
            assert np.all(np.diff(starts) >= 0)
            assert starts[0] == 3


# ── Incidence tests ───────────────────────────────────────────────────

class TestIncidence:
    def test_history_only_from_earlier_onsets(self):
        history = neutral_array('history_logit')
        history[1, 0] = 2.0
        updater = make_updater(InputTables(history_logit=history))
        patient = make_patient()
        patient.month = 5
        set_condition_state(patient, 0, True, is_new_onset=True)
        set_stage_starts(patient, 0, [NO_MONTH, NO_MONTH])
        assert updater.history_logits(patient, 1) == []
        patient.month = 6
        assert updater.history_logits(patient, 1) == [2.0]

    def test_same_month_onset_not_history(self):
        incidence = certain_incidence(0)
        incidence[1] = 0.5
        history = neutral_array('history_logit')
        history[1, 0] = 10.0
        rng = FixedSequenceSource(default=0.6)
        tables = InputTables(incidence_hiv_pos=incidence, history_logit=history)
        patient = make_patient()
        patient.month = 2
        make_updater(tables, rng).perform_monthly_updates(patient)
        assert patient.has_condition[0]
        assert not patient.has_condition[1]

    def test_art_effect_scales_incidence(self):
        incidence = neutral_array('incidence_hiv_pos')
        incidence[0] = 0.2
        multiplier = neutral_array('art_incidence_multiplier')
        multiplier[0, CD4Stratum.LO] = 0.5
        updater = make_updater(InputTables(incidence_hiv_pos=incidence,
                                           art_incidence_multiplier=multiplier))
        patient = make_patient()
        assert updater.incidence_probability(patient, 0) == pytest.approx(0.2)
        patient.care.art_effect_applies = True
        assert updater.incidence_probability(patient, 0) == pytest.approx(
            prob_rate_multiply(0.2, 0.5))
        patient.care.response_factors[:] = 0.0
        assert updater.incidence_probability(patient, 0) == pytest.approx(0.2)

    def test_dependent_mode_one_condition_at_a_time(self):
        tables = InputTables(incidence_hiv_pos=certain_incidence(*range(10)))
        updater = make_updater(tables, dependent_onset=True,
                               months_since_previous_dependent=9)
        patient = make_patient()
        patient.month = 1
        updater.perform_monthly_updates(patient)
        assert list(np.flatnonzero(patient.has_condition)) == [0]

        patient.month = 9
        updater.perform_monthly_updates(patient)
        assert patient.n_conditions == 1

        patient.month = 10
        updater.perform_monthly_updates(patient)
        assert list(np.flatnonzero(patient.has_condition)) == [0, 1]

    def test_dependent_mode_stops_at_first_missing(self):
        incidence = certain_incidence(1)
        rng = FixedSequenceSource()
        updater = make_updater(InputTables(incidence_hiv_pos=incidence), rng,
                               dependent_onset=True)
        patient = make_patient()
        patient.month = 1
        updater.perform_monthly_updates(patient)
        assert patient.n_conditions == 0
        assert rng.count(streams.CONDITION_INCIDENCE) == 1

    def test_risk_factor_incidence(self):
        incidence = neutral_array('risk_factor_incidence')
        incidence[3] = 1.0
        patient = make_patient()
        patient.month = 1
        make_updater(InputTables(risk_factor_incidence=incidence)).perform_monthly_updates(patient)
        assert list(np.flatnonzero(patient.risk_factors)) == [3]


# ── Stage effect tests ────────────────────────────────────────────────

def _two_condition_patient() -> Patient:
    patient = make_patient()
    patient.month = 5
    for c in (0, 1):
        set_condition_state(patient, c, True, is_new_onset=True, onset_month=1)
        set_stage_starts(patient, c, [NO_MONTH, NO_MONTH])
    return patient


def _effect_tables() -> InputTables:
    cost = neutral_array('stage_cost')
    cost[0, 0] = 10.0
    cost[1, 0] = 25.0
    qol = neutral_array('stage_qol_modifier')
    qol[0, 0] = -0.1
    qol[1, 0] = -0.2
    ratio = neutral_array('stage_death_rate_ratio')
    ratio[1, 0] = 3.0
    death_cost = neutral_array('death_cost')
    death_cost[DeathCause.COMORBIDITY_2] = 500.0
    multi = neutral_array('multiple_condition_qol')
    multi[0] = -0.05
    multi[1] = -0.5
    return InputTables(stage_cost=cost, stage_qol_modifier=qol,
                       stage_death_rate_ratio=ratio, death_cost=death_cost,
                       multiple_condition_qol=multi)


class TestStageEffects:
    def test_costs_qol_and_hazards(self):
        patient = _two_condition_patient()
        make_updater(_effect_tables()).apply_stage_effects(patient)
        assert patient.costs[CostCategory.COMORBIDITY] == 35.0
        assert patient.condition_costs[0] == 10.0
        assert patient.condition_costs[1] == 25.0
        assert patient.qol_modifier == pytest.approx(-0.3)
        assert len(patient.mortality_risks) == 1
        risk = patient.mortality_risks[0]
        assert risk.cause == DeathCause.COMORBIDITY_2
        assert risk.rate_ratio == 3.0
        assert risk.death_cost == 500.0

    def test_marginal_penalty_with_two_conditions(self):
        patient = _two_condition_patient()
        updater = make_updater(_effect_tables())
        updater.marginal_qol = True
        updater.apply_stage_effects(patient)
        assert patient.qol_modifier == pytest.approx(-0.35)

    def test_no_marginal_penalty_with_one_condition(self):
        patient = make_patient()
        patient.month = 5
        set_condition_state(patient, 0, True, is_new_onset=True, onset_month=1)
        set_stage_starts(patient, 0, [NO_MONTH, NO_MONTH])
        updater = make_updater(_effect_tables())
        updater.marginal_qol = True
        updater.apply_stage_effects(patient)
        assert patient.qol_modifier == pytest.approx(-0.1)

    def test_no_penalty_in_additive_mode(self):
        patient = _two_condition_patient()
        make_updater(_effect_tables()).apply_stage_effects(patient)
        assert patient.qol_modifier == pytest.approx(-0.3)
