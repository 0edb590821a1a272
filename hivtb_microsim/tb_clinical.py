"""TB clinical-management module.

Tracks the diagnostic and treatment workflow independently of the TB
natural history it acts on:

  - Eligibility for TB diagnostics (OR/AND policy over named criteria)
  - Diagnostic test ordering and result pickup after a delay
  - Drug-susceptibility testing (DST) resolved after its own delay
  - Empiric therapy stopped once its configured duration is reached
  - Treatment completion, failure, resistance amplification, retreatment
  - TB-care loss to follow-up and return, default while on treatment
  - Preventive therapy (proph) start/stop policies with eligibility roll
    and start lag
  - Treatment, proph and untreated-TB costs

Monthly order: testing → stop empiric → treatment → LTFU → default →
proph → costs. Eligibility checks are pure predicates over patient state
and policy thresholds; each state change happens at most once per month.
"""

from __future__ import annotations

from typing import Dict, List

from hivtb_microsim import rng as streams
from hivtb_microsim.context import SimContext
from hivtb_microsim.patient import (
    Patient,
    increment_cost,
    set_tb_ltfu,
    set_tb_rtc,
)
from hivtb_microsim.types import (
    N_TB_TREATMENT_LINES,
    NO_MONTH,
    CostCategory,
    LTFUState,
    TBCareState,
    TBState,
    TBStrain,
    TBTracker,
)


def _policy_met(results: Dict[str, bool], criteria: List[str], policy: str) -> bool:
    """Combine named criteria with 'or' / 'and'; no criteria never qualifies."""
    values = [results[name] for name in criteria]
    if not values:
        return False
    return all(values) if policy == 'and' else any(values)


class TBClinicalUpdater:
    """Monthly TB diagnostics, treatment, LTFU and prophylaxis."""

    def __init__(self, ctx: SimContext):
        self.ctx = ctx
        self.cfg = ctx.config.tb_clinical
        self.enabled = ctx.config.tb.enabled and self.cfg.enabled
        self.tables = ctx.tables

    def perform_initial_updates(self, patient: Patient) -> None:
        """Patients enter unlinked from TB care, off treatment and proph."""
        if self.enabled and self.cfg.integrated and patient.care.in_hiv_care:
            patient.tb.care_state = TBCareState.IN_CARE

    def perform_monthly_updates(self, patient: Patient) -> None:
        if not self.enabled:
            return
        self.update_testing(patient)
        self.check_stop_empiric(patient)
        self.update_treatment(patient)
        self.update_ltfu(patient)
        self.check_default(patient)
        self.update_proph(patient)
        self.accrue_costs(patient)

    # ═══════════════════════════════════════════════════════════════════
    # ELIGIBILITY PREDICATES
    # ═══════════════════════════════════════════════════════════════════

    def _observed_cd4_below(self, patient: Patient, threshold: float) -> bool:
        observed = patient.care.observed_cd4
        return patient.hiv_positive and observed is not None and observed < threshold

    def evaluate_start_diagnostics(self, patient: Patient) -> bool:
        tb, month = patient.tb, patient.month
        if (tb.on_treatment or tb.test_result_month != NO_MONTH
                or tb.care_state == TBCareState.LTFU):
            return False
        if month < self.cfg.diagnostics_start_month:
            return False
        if (tb.month_of_last_test != NO_MONTH
                and month - tb.month_of_last_test < self.cfg.diagnostics_interval_months):
            return False
        if (tb.month_of_treatment_stop != NO_MONTH
                and month - tb.month_of_treatment_stop
                < self.cfg.post_treatment_hiatus_months):
            return False
        results = {
            'symptoms': tb.has(TBTracker.SYMPTOMS),
            'hiv_positive': patient.hiv_positive,
            'cd4_below': self._observed_cd4_below(
                patient, self.cfg.diagnostics_cd4_threshold),
            'immune_reactive': tb.has(TBTracker.IMMUNE_REACTIVE),
        }
        return _policy_met(results, self.cfg.diagnostics_criteria,
                           self.cfg.diagnostics_policy)

    def evaluate_start_proph(self, patient: Patient) -> bool:
        tb = patient.tb
        if (tb.on_proph or tb.on_treatment or tb.is_active
                or tb.care_state == TBCareState.LTFU):
            return False
        if tb.n_proph_starts >= self.cfg.proph_max_starts:
            return False
        results = {
            'hiv_positive': patient.hiv_positive,
            'cd4_below': self._observed_cd4_below(patient, self.cfg.proph_cd4_threshold),
            'immune_reactive': tb.has(TBTracker.IMMUNE_REACTIVE),
            'prev_treated': tb.state == TBState.PREV_TREATED,
        }
        return _policy_met(results, self.cfg.proph_start_criteria,
                           self.cfg.proph_start_policy)

    def evaluate_stop_proph(self, patient: Patient) -> bool:
        tb = patient.tb
        if patient.month - tb.month_proph_start >= self.cfg.proph_duration_months:
            return True
        if tb.is_active or tb.on_treatment:
            return True
        lost = (tb.care_state == TBCareState.LTFU
                or patient.care.ltfu_state == LTFUState.LOST)
        return self.cfg.proph_stop_on_ltfu and lost

    # ═══════════════════════════════════════════════════════════════════
    # TESTING
    # ═══════════════════════════════════════════════════════════════════

    def update_testing(self, patient: Patient) -> None:
        if self.evaluate_start_diagnostics(patient):
            self.order_test(patient)
        self.pickup_test_result(patient)
        self.pickup_dst_result(patient)

    def order_test(self, patient: Patient) -> None:
        tb = patient.tb
        tb.month_of_last_test = patient.month
        increment_cost(patient, CostCategory.TB_TESTING, self.cfg.test_cost)
        if tb.is_active:
            p_positive = self.cfg.test_sensitivity
        else:
            p_positive = 1.0 - self.cfg.test_specificity
        tb.test_result_positive = self.ctx.draw(streams.TB_TEST_RESULT, patient) < p_positive
        tb.test_result_month = patient.month + self.cfg.result_delay_months
        if tb.care_state == TBCareState.UNLINKED:
            tb.care_state = TBCareState.IN_CARE
        self.ctx.trace(patient, 1, f"  {patient.month} TB TEST ORDERED;")
        if self.cfg.empiric_at_test_order and not tb.on_treatment:
            self.start_treatment(patient, 0, empiric=True)

    def pickup_test_result(self, patient: Patient) -> None:
        tb = patient.tb
        if tb.test_result_month == NO_MONTH or tb.test_result_month > patient.month:
            return
        tb.test_result_month = NO_MONTH
        result = 'POSITIVE' if tb.test_result_positive else 'NEGATIVE'
        self.ctx.trace(patient, 1, f"  {patient.month} TB TEST RESULT {result};")
        if not tb.test_result_positive:
            return
        if tb.on_treatment and tb.on_empiric:
            tb.on_empiric = False
        elif not tb.on_treatment:
            line = 0 if tb.observed_strain is None else int(tb.observed_strain)
            self.start_treatment(patient, line)
        if self.ctx.draw(streams.TB_DST_ORDER, patient) < self.cfg.prob_dst:
            tb.dst_result_month = patient.month + self.cfg.dst_delay_months

    def pickup_dst_result(self, patient: Patient) -> None:
        tb = patient.tb
        if tb.dst_result_month == NO_MONTH or tb.dst_result_month > patient.month:
            return
        tb.dst_result_month = NO_MONTH
        tb.observed_strain = tb.strain
        self.ctx.trace(patient, 1,
                       f"  {patient.month} TB DST RESULT {tb.strain.name};")
        if tb.on_treatment and int(tb.strain) > tb.treatment_line:
            self.start_treatment(patient, int(tb.strain))

    # ═══════════════════════════════════════════════════════════════════
    # TREATMENT
    # ═══════════════════════════════════════════════════════════════════

    def start_treatment(self, patient: Patient, line: int, empiric: bool = False) -> None:
        tb = patient.tb
        tb.on_treatment = True
        tb.on_empiric = empiric
        tb.treatment_line = min(line, N_TB_TREATMENT_LINES - 1)
        tb.month_treatment_start = patient.month
        tb.n_treatments += 1
        tb.care_state = TBCareState.IN_CARE
        tb.proph_scheduled_month = NO_MONTH
        if tb.on_proph:
            self.stop_proph(patient)
        kind = 'EMPIRIC ' if empiric else ''
        self.ctx.trace(patient, 1,
                       f"  {patient.month} START {kind}TB TREATMENT LINE "
                       f"{tb.treatment_line + 1};")

    def stop_treatment(self, patient: Patient) -> None:
        tb = patient.tb
        tb.on_treatment = False
        tb.on_empiric = False
        tb.month_of_treatment_stop = patient.month

    def complete_treatment(self, patient: Patient) -> None:
        """Successful course: active TB is treated, latent TB cleared."""
        tb = patient.tb
        self.stop_treatment(patient)
        if tb.is_active:
            tb.state = TBState.PREV_TREATED
            tb.is_self_cured = False
            tb.self_cure_month = NO_MONTH
            tb.set_tracker(TBTracker.SPUTUM_HI, False)
        elif tb.state == TBState.LATENT:
            tb.state = TBState.UNINFECTED
        tb.care_state = TBCareState.UNLINKED
        self.ctx.trace(patient, 1, f"  {patient.month} TB TREATMENT SUCCESS;")

    def treatment_succeeds(self, patient: Patient, stream: int) -> bool:
        tb = patient.tb
        prob = self.tables.get('tb_treatment_success', tb.treatment_line, tb.strain)
        return self.ctx.draw(stream, patient) < prob

    def check_stop_empiric(self, patient: Patient) -> None:
        tb = patient.tb
        if not (tb.on_treatment and tb.on_empiric):
            return
        if patient.month - tb.month_treatment_start < self.cfg.empiric_duration_months:
            return
        if self.treatment_succeeds(patient, streams.TB_EMPIRIC_OUTCOME):
            self.complete_treatment(patient)
        else:
            self.stop_treatment(patient)
            self.ctx.trace(patient, 1, f"  {patient.month} STOP EMPIRIC TB TREATMENT;")

    def update_treatment(self, patient: Patient) -> None:
        tb = patient.tb
        if not tb.on_treatment or tb.on_empiric:
            return
        duration = int(self.tables.get('tb_treatment_duration', tb.treatment_line))
        if patient.month - tb.month_treatment_start < duration:
            return
        if self.treatment_succeeds(patient, streams.TB_TREATMENT_OUTCOME):
            self.complete_treatment(patient)
            return

        line = tb.treatment_line
        self.ctx.trace(patient, 1, f"  {patient.month} TB TREATMENT FAILURE;")
        if (tb.strain < TBStrain.XDR
                and self.ctx.draw(streams.TB_RESISTANCE, patient)
                < self.tables.get('tb_resistance_increase_prob', line)):
            tb.strain = TBStrain(tb.strain + 1)
            self.ctx.trace(patient, 1,
                           f"  {patient.month} TB RESISTANCE INCREASED TO "
                           f"{tb.strain.name};")
        self.stop_treatment(patient)
        if self.cfg.retreat_after_failure and line + 1 < N_TB_TREATMENT_LINES:
            self.start_treatment(patient, line + 1)

    # ═══════════════════════════════════════════════════════════════════
    # LOSS TO FOLLOW-UP
    # ═══════════════════════════════════════════════════════════════════

    def in_hiv_care(self, patient: Patient) -> bool:
        return (patient.care.in_hiv_care
                and patient.care.ltfu_state != LTFUState.LOST)

    def update_ltfu(self, patient: Patient) -> None:
        """TB-care LTFU; an integrated clinic leaves this to the HIV side."""
        if not self.cfg.use_tb_ltfu:
            return
        if self.cfg.integrated and self.in_hiv_care(patient):
            return
        tb = patient.tb
        if tb.care_state == TBCareState.LTFU:
            months_lost = patient.month - tb.month_of_ltfu
            if (months_lost >= self.cfg.max_months_ltfu
                    or self.ctx.draw(streams.TB_RTC, patient)
                    < self.tables.get('tb_rtc_prob', tb.state)):
                set_tb_rtc(patient)
                self.ctx.trace(patient, 1, f"  {patient.month} TB RTC;")
        elif tb.care_state == TBCareState.IN_CARE:
            if self.ctx.draw(streams.TB_LTFU, patient) < self.tables.get('tb_ltfu_prob', tb.state):
                set_tb_ltfu(patient)
                self.ctx.trace(patient, 1, f"  {patient.month} TB LTFU;")

    def check_default(self, patient: Patient) -> None:
        """Lost while on treatment: treatment stops, active TB defaults."""
        tb = patient.tb
        if not (tb.on_treatment and tb.care_state == TBCareState.LTFU):
            return
        self.stop_treatment(patient)
        tb.ever_defaulted = True
        if tb.is_active:
            tb.state = TBState.TREAT_DEFAULT
        self.ctx.trace(patient, 1, f"  {patient.month} TB TREATMENT DEFAULT;")

    # ═══════════════════════════════════════════════════════════════════
    # PROPHYLAXIS
    # ═══════════════════════════════════════════════════════════════════

    def start_proph(self, patient: Patient) -> None:
        tb = patient.tb
        tb.on_proph = True
        tb.month_proph_start = patient.month
        tb.proph_scheduled_month = NO_MONTH
        tb.n_proph_starts += 1
        self.ctx.trace(patient, 1, f"  {patient.month} START TB PROPH;")

    def stop_proph(self, patient: Patient) -> None:
        patient.tb.on_proph = False
        self.ctx.trace(patient, 1, f"  {patient.month} STOP TB PROPH;")

    def update_proph(self, patient: Patient) -> None:
        if not self.cfg.proph_enabled:
            return
        tb = patient.tb
        if tb.on_proph:
            if self.evaluate_stop_proph(patient):
                self.stop_proph(patient)
            return
        if tb.proph_scheduled_month != NO_MONTH:
            if patient.month < tb.proph_scheduled_month:
                return
            if self.evaluate_start_proph(patient):
                self.start_proph(patient)
            else:
                tb.proph_scheduled_month = NO_MONTH
                self.ctx.trace(patient, 2, f"  {patient.month} SCHEDULED TB PROPH CANCELLED;")
            return
        if not self.evaluate_start_proph(patient):
            return
        if self.ctx.draw(streams.TB_PROPH_ELIGIBLE, patient) >= self.cfg.prob_proph_eligible:
            return
        lag = self.ctx.draw_gaussian(self.cfg.proph_lag_mean_months,
                                     self.cfg.proph_lag_sd_months,
                                     streams.TB_PROPH_LAG, patient)
        lag = max(0, int(round(lag)))
        if lag == 0:
            self.start_proph(patient)
        else:
            tb.proph_scheduled_month = patient.month + lag

    # ═══════════════════════════════════════════════════════════════════
    # COSTS
    # ═══════════════════════════════════════════════════════════════════

    def accrue_costs(self, patient: Patient) -> None:
        tb = patient.tb
        if tb.on_treatment:
            months = patient.month - tb.month_treatment_start
            if months % self.cfg.visit_frequency_months == 0:
                increment_cost(patient, CostCategory.TB_TREATMENT,
                               self.tables.get('tb_treatment_visit_cost', tb.treatment_line))
            if months % self.cfg.med_frequency_months == 0:
                increment_cost(patient, CostCategory.TB_TREATMENT,
                               self.tables.get('tb_treatment_med_cost', tb.treatment_line))
        if tb.on_proph:
            increment_cost(patient, CostCategory.TB_PROPH, self.cfg.proph_monthly_cost)
        if tb.is_active and not tb.on_treatment:
            increment_cost(patient, CostCategory.TB_UNTREATED, self.cfg.untreated_cost)
