"""Comorbidity module: prevalence, incidence and staging of chronic conditions.

Implements:
  - Prevalent conditions at entry, with sampled months since onset
  - Monthly incidence with risk-factor, ART-response and history logits
  - Dependent-onset ("chain") mode: onset tied to the patient's own age,
    conditions acquired strictly in index order, one at a time
  - Risk-factor incidence
  - Stage tracking from sampled stage durations
  - Per-stage cost, QOL modifier and mortality hazard
  - Marginal QOL penalty for co-occurring conditions

Every stochastic decision composes its probability in log-odds space
(probability.compose_probability) and consumes one uniform draw from a
decision-specific stream.

Onset months: the true onset of a prevalent condition may precede model
entry. Stage starts are scheduled from the true onset and then clamped to
month 0, so a long-standing condition can enter already in a late stage
while the recorded onset stays ≥ 0.
"""

from __future__ import annotations

import math
from typing import List

import numpy as np

from hivtb_microsim import rng as streams
from hivtb_microsim.context import SimContext
from hivtb_microsim.patient import (
    Patient,
    accumulate_qol_modifier,
    add_mortality_risk,
    clear_conditions,
    current_stage,
    increment_cost,
    set_condition_state,
    set_risk_factor,
    set_stage_starts,
)
from hivtb_microsim.probability import (
    compose_probability,
    effective_multiplier,
    prob_rate_multiply,
)
from hivtb_microsim.tables import StageKey, StrataKey
from hivtb_microsim.types import (
    N_CONDITION_STAGES,
    N_CONDITIONS,
    N_RISK_FACTORS,
    NO_MONTH,
    CostCategory,
    DeathCause,
    ResponseCategory,
)


class ComorbidityUpdater:
    """Monthly comorbidity updates for one patient at a time."""

    def __init__(self, ctx: SimContext):
        self.ctx = ctx
        self.cfg = ctx.config.comorbidity
        self.tables = ctx.tables
        self.marginal_qol = ctx.config.simulation.qol_calculation == 'marginal'

    # ── Lookups ──────────────────────────────────────────────────────

    def strata(self, patient: Patient, condition: int) -> StrataKey:
        age_cat = self.tables.condition_age_category(condition, patient.age_years)
        return StrataKey(patient.cd4_key, patient.gender, age_cat)

    def dependent_age_category(self, patient: Patient) -> int:
        return int(np.searchsorted(self.cfg.dependent_age_bounds_months,
                                   patient.age_months, side='left'))

    def history_logits(self, patient: Patient, condition: int) -> List[float]:
        """Deltas from other conditions with onset strictly before this month.

        A condition acquired earlier in the same month is not yet history.
        """
        deltas = []
        for other in np.flatnonzero(patient.has_condition):
            if other == condition:
                continue
            if patient.condition_stage_start[other, 0] < patient.month:
                deltas.append(self.tables.get('history_logit', condition, other))
        return deltas

    # ── Onset and staging ────────────────────────────────────────────

    def months_since_onset(self, patient: Patient, condition: int) -> int:
        """Months between onset and entry for a prevalent condition (≥ 0)."""
        if self.cfg.dependent_onset:
            months = int(self.tables.get('dependent_onset_months', condition,
                                         self.dependent_age_category(patient)))
        else:
            mean = self.tables.get('onset_months_mean', condition)
            sd = self.tables.get('onset_months_sd', condition)
            sample = self.ctx.draw_gaussian(mean, sd, streams.CONDITION_ONSET, patient)
            months = int(math.floor(sample + 0.5))
        return max(0, months)

    def sample_stage_duration(self, patient: Patient, condition: int,
                              transition: int) -> int:
        """Months spent in stage `transition` before the next one starts.

        With stage_duration_sqrt_transform the tabulated mean and sd
        describe the square root of the duration.
        """
        mean = self.tables.get('stage_duration_mean', transition, condition)
        sd = self.tables.get('stage_duration_sd', transition, condition)
        sample = self.ctx.draw_gaussian(mean, sd, streams.CONDITION_STAGE_DURATION,
                                        patient)
        if self.cfg.stage_duration_sqrt_transform:
            sample = max(0.0, sample) ** 2
        return max(0, int(math.floor(sample + 0.5)))

    def start_condition(self, patient: Patient, condition: int,
                        true_onset: int) -> None:
        """Mark a condition present and schedule its later stages."""
        set_condition_state(patient, condition, True, is_new_onset=True,
                            onset_month=true_onset)
        starts = []
        month = true_onset
        for transition in range(N_CONDITION_STAGES - 1):
            if self.tables.get('stage_duration_mean', transition, condition) < 0:
                starts.extend([NO_MONTH] * (N_CONDITION_STAGES - 1 - transition))
                break
            month += self.sample_stage_duration(patient, condition, transition)
            starts.append(max(0, month))
        set_stage_starts(patient, condition, starts)

    # ── Lifecycle ────────────────────────────────────────────────────

    def perform_initial_updates(self, patient: Patient) -> None:
        """Roll for prevalent conditions at entry."""
        if not self.cfg.enabled:
            return
        if self.cfg.dependent_onset:
            clear_conditions(patient)

        for condition in range(N_CONDITIONS):
            p = self.tables.condition_probability(
                'prevalence', condition, self.strata(patient, condition))
            prob = compose_probability(p, self.tables.risk_factor_logits(
                'prevalence', condition, patient.risk_factors))
            if self.ctx.draw(streams.CONDITION_PREVALENCE, patient) < prob:
                months_since = self.months_since_onset(patient, condition)
                self.start_condition(patient, condition, patient.month - months_since)
                self.ctx.trace(patient, 1,
                               f"  {patient.month} PREVALENT COMORBIDITY "
                               f"{condition + 1}, {months_since} months since onset;")
            elif self.cfg.dependent_onset:
                break

    def perform_monthly_updates(self, patient: Patient) -> None:
        if not self.cfg.enabled:
            return
        if self.incidence_allowed(patient):
            self.roll_incidence(patient)
        self.roll_risk_factors(patient)
        self.apply_stage_effects(patient)

    # ── Monthly steps ────────────────────────────────────────────────

    def incidence_allowed(self, patient: Patient) -> bool:
        """Dependent-onset mode waits after the latest condition in the chain."""
        if not self.cfg.dependent_onset:
            return True
        held = np.flatnonzero(patient.has_condition)
        if held.size == 0:
            return True
        last_start = int(patient.condition_stage_start[held[-1], 0])
        return patient.month - last_start >= self.cfg.months_since_previous_dependent

    def incidence_probability(self, patient: Patient, condition: int) -> float:
        p = self.tables.condition_probability(
            'incidence', condition, self.strata(patient, condition))
        if patient.hiv_positive and patient.care.art_effect_applies:
            multiplier = effective_multiplier(
                patient.care.response_factor(ResponseCategory.COMORBIDITY),
                self.tables.get('art_incidence_multiplier', condition,
                                patient.cd4_stratum),
            )
            p = prob_rate_multiply(p, multiplier)
        deltas = self.tables.risk_factor_logits('incidence', condition,
                                                patient.risk_factors)
        deltas += self.history_logits(patient, condition)
        return compose_probability(p, deltas)

    def roll_incidence(self, patient: Patient) -> None:
        for condition in range(N_CONDITIONS):
            if patient.has_condition[condition]:
                continue
            prob = self.incidence_probability(patient, condition)
            if self.ctx.draw(streams.CONDITION_INCIDENCE, patient) < prob:
                self.start_condition(patient, condition, patient.month)
                self.ctx.trace(patient, 1,
                               f"**{patient.month} INCIDENT COMORBIDITY "
                               f"{condition + 1};")
            # Chain mode: only the first missing condition is eligible
            if self.cfg.dependent_onset:
                break

    def roll_risk_factors(self, patient: Patient) -> None:
        for risk_factor in range(N_RISK_FACTORS):
            if patient.risk_factors[risk_factor]:
                continue
            prob = self.tables.get('risk_factor_incidence', risk_factor)
            if self.ctx.draw(streams.RISK_FACTOR_INCIDENCE, patient) < prob:
                set_risk_factor(patient, risk_factor, True)
                self.ctx.trace(patient, 1,
                               f"**{patient.month} INCIDENT RISK FACTOR "
                               f"{risk_factor + 1};")

    def apply_stage_effects(self, patient: Patient) -> None:
        """Cost, QOL and mortality hazard of each present condition's stage."""
        count = 0
        for condition in np.flatnonzero(patient.has_condition):
            condition = int(condition)
            stage = current_stage(patient, condition)
            age_cat = self.tables.condition_age_category(condition, patient.age_years)
            outcome = self.tables.stage_outcome(
                StageKey(condition, stage, patient.gender, age_cat))
            if outcome.death_rate_ratio > 1.0:
                cause = DeathCause.for_condition(condition)
                add_mortality_risk(patient, cause, outcome.death_rate_ratio,
                                   self.tables.get('death_cost', cause))
            increment_cost(patient, CostCategory.COMORBIDITY, outcome.cost,
                           condition=condition)
            accumulate_qol_modifier(patient, outcome.qol_modifier)
            count += 1

        if self.marginal_qol and count > 1:
            accumulate_qol_modifier(
                patient, self.tables.get('multiple_condition_qol', count - 2))
