"""TB natural-history module.

Finite-state model over TBState with three tracker flags (sputum-high,
immune-reactive, symptoms). Monthly transitions run in a fixed order,
each gated on the state left by the previous step:

  1. Activation        LATENT → ACTIVE_PULM / ACTIVE_EXTRAPULM
  2. Self-cure         untreated ACTIVE_* → PREV_TREATED (flagged self-cured)
  3. Symptoms          non-active states clear last month's symptoms;
                       every state may acquire symptoms
  4. (Re)infection     non-active states → LATENT
  5. Relapse           PREV_TREATED (not self-cured) / TREAT_DEFAULT → ACTIVE_*,
                       skipped in a month with reinfection

Active TB then registers its excess mortality hazard for the month.

Self-cure is scheduled rather than rolled monthly: activation draws the
self-cure month from Gaussian(self_cure_mean_months, self_cure_sd_months),
and an untreated patient self-cures on reaching it (see DESIGN.md).

Relapse hazard:
  rate = f(CD4) × relapse_rate_multiplier × exp(−min(t, t_thresh) × k)
  (× default_relapse_multiplier after default), converted with 1 − e^−rate,
  where t is months since the end of treatment.

References:
  - TB natural history: recent vs remote infection activation,
    reinfection multipliers by prior state
"""

from __future__ import annotations

import math

from hivtb_microsim import rng as streams
from hivtb_microsim.context import SimContext
from hivtb_microsim.patient import Patient, add_mortality_risk
from hivtb_microsim.probability import (
    compose_probability,
    prob_rate_multiply,
    rate_to_prob,
    select_from_distribution,
)
from hivtb_microsim.types import (
    NO_MONTH,
    DeathCause,
    TBSite,
    TBState,
    TBStrain,
    TBTracker,
)


class TBDiseaseUpdater:
    """Monthly TB natural-history transitions."""

    def __init__(self, ctx: SimContext):
        self.ctx = ctx
        self.cfg = ctx.config.tb
        self.tables = ctx.tables

    # ── Helpers ──────────────────────────────────────────────────────

    def prob_pulmonary(self, patient: Patient) -> float:
        if patient.hiv_positive:
            return self.tables.get('tb_prob_pulmonary_hiv_pos', patient.cd4_stratum)
        return self.cfg.prob_pulmonary_hiv_neg

    def schedule_self_cure(self, patient: Patient) -> None:
        if not self.cfg.self_cure_enabled:
            patient.tb.self_cure_month = NO_MONTH
            return
        months = self.ctx.draw_gaussian(self.cfg.self_cure_mean_months,
                                        self.cfg.self_cure_sd_months,
                                        streams.TB_SELF_CURE_TIME, patient)
        patient.tb.self_cure_month = patient.month + max(1, int(round(months)))

    def activate(self, patient: Patient, site_stream: int) -> None:
        """Move to an active state, drawing site and sputum status."""
        tb = patient.tb
        if self.ctx.draw(site_stream, patient) < self.prob_pulmonary(patient):
            tb.state = TBState.ACTIVE_PULM
            sputum_hi = self.ctx.draw(streams.TB_SPUTUM_HI, patient) < self.cfg.prob_sputum_hi
            tb.set_tracker(TBTracker.SPUTUM_HI, sputum_hi)
        else:
            tb.state = TBState.ACTIVE_EXTRAPULM
            tb.set_tracker(TBTracker.SPUTUM_HI, False)
        tb.month_of_activation = patient.month
        self.schedule_self_cure(patient)

    # ── Lifecycle ────────────────────────────────────────────────────

    def perform_initial_updates(self, patient: Patient) -> None:
        """Sample TB state, strain and trackers at entry."""
        if not self.cfg.enabled:
            return
        tb = patient.tb
        if patient.hiv_positive:
            dist = self.tables.row('tb_entry_state_hiv_pos', patient.cd4_stratum)
        else:
            dist = self.tables.tb_entry_state_hiv_neg
        tb.state = TBState(select_from_distribution(
            dist, self.ctx.draw(streams.TB_INITIAL_STATE, patient)))

        if tb.state != TBState.UNINFECTED:
            tb.strain = TBStrain(select_from_distribution(
                self.tables.tb_entry_strain,
                self.ctx.draw(streams.TB_INITIAL_STRAIN, patient)))
            tb.ever_infected = True
            tb.month_of_infection = patient.month
            if tb.is_active:
                tb.month_of_activation = patient.month
                self.schedule_self_cure(patient)
            elif tb.state in (TBState.PREV_TREATED, TBState.TREAT_DEFAULT):
                tb.month_of_treatment_stop = patient.month
                tb.ever_defaulted = tb.state == TBState.TREAT_DEFAULT

        for tracker in TBTracker:
            prob = self.tables.get('tb_entry_tracker_prob', tb.state, tracker)
            if self.ctx.draw(streams.TB_INITIAL_TRACKER, patient) < prob:
                tb.set_tracker(tracker, True)

        self.ctx.trace(patient, 2,
                       f"  {patient.month} TB STATE AT ENTRY {tb.state.name} "
                       f"{tb.strain.name};")

    def perform_monthly_updates(self, patient: Patient) -> None:
        if not self.cfg.enabled:
            return
        self.roll_activation(patient)
        self.check_self_cure(patient)
        self.update_symptoms(patient)
        reinfected = self.roll_infection(patient)
        if not reinfected:
            self.roll_relapse(patient)
        self.register_mortality(patient)

    # ── Transitions ──────────────────────────────────────────────────

    def activation_probability(self, patient: Patient) -> float:
        tb = patient.tb
        months = patient.month - tb.month_of_infection
        period = 0 if months < self.cfg.activation_threshold_months else 1
        if patient.hiv_positive:
            p = self.tables.get('tb_activation_prob_hiv_pos',
                                patient.cd4_stratum, period)
        else:
            p = self.tables.get('tb_activation_prob_hiv_neg', period)
        if tb.on_proph:
            p = prob_rate_multiply(p, 1.0 - self.cfg.proph_efficacy)
        if tb.on_treatment:
            p = prob_rate_multiply(p, 1.0 - self.cfg.latent_treatment_efficacy)
        deltas = [self.tables.get('tb_activation_risk_logit', r)
                  for r, present in enumerate(patient.risk_factors) if present]
        return compose_probability(p, deltas)

    def roll_activation(self, patient: Patient) -> bool:
        if patient.tb.state != TBState.LATENT:
            return False
        prob = self.activation_probability(patient)
        if self.ctx.draw(streams.TB_ACTIVATION, patient) >= prob:
            return False
        self.activate(patient, streams.TB_ACTIVATION_PULMONARY)
        self.ctx.trace(patient, 1,
                       f"**{patient.month} TB ACTIVATION {patient.tb.state.name};")
        return True

    def check_self_cure(self, patient: Patient) -> bool:
        tb = patient.tb
        if (not tb.is_active or tb.on_treatment
                or tb.self_cure_month == NO_MONTH
                or patient.month < tb.self_cure_month):
            return False
        tb.state = TBState.PREV_TREATED
        tb.is_self_cured = True
        tb.self_cure_month = NO_MONTH
        tb.month_of_treatment_stop = patient.month
        tb.set_tracker(TBTracker.SPUTUM_HI, False)
        self.ctx.trace(patient, 1, f"**{patient.month} TB SELF CURE;")
        return True

    def update_symptoms(self, patient: Patient) -> None:
        tb = patient.tb
        if not tb.is_active:
            tb.set_tracker(TBTracker.SYMPTOMS, False)
        if patient.hiv_positive:
            prob = self.tables.get('tb_symptom_prob_hiv_pos',
                                   patient.cd4_stratum, tb.state)
        else:
            prob = self.tables.get('tb_symptom_prob_hiv_neg', tb.state)
        if self.ctx.draw(streams.TB_SYMPTOMS, patient) < prob:
            if not tb.has(TBTracker.SYMPTOMS):
                self.ctx.trace(patient, 2, f"  {patient.month} TB SYMPTOMS;")
            tb.set_tracker(TBTracker.SYMPTOMS, True)

    def roll_infection(self, patient: Patient) -> bool:
        """(Re)infection of a non-active patient. Returns True on infection."""
        tb = patient.tb
        if not self.cfg.infection_enabled or tb.is_active:
            return False
        age_cat = self.tables.tb_age_category(patient.age_years)
        prob = prob_rate_multiply(
            self.tables.get('tb_infection_prob', age_cat),
            self.tables.get('tb_infection_multiplier', tb.state),
        )
        if self.ctx.draw(streams.TB_INFECTION, patient) >= prob:
            return False

        reinfection = tb.ever_infected
        tb.strain = TBStrain(select_from_distribution(
            self.tables.tb_infection_strain,
            self.ctx.draw(streams.TB_INFECTION_STRAIN, patient)))
        tb.state = TBState.LATENT
        tb.month_of_infection = patient.month
        tb.is_self_cured = False
        tb.self_cure_month = NO_MONTH
        tb.ever_infected = True
        if (self.ctx.draw(streams.TB_IMMUNE_REACTIVE, patient)
                < self.cfg.prob_immune_reactive_on_infection):
            tb.set_tracker(TBTracker.IMMUNE_REACTIVE, True)
        label = 'REINFECTION' if reinfection else 'INFECTION'
        self.ctx.trace(patient, 1,
                       f"**{patient.month} TB {label} {tb.strain.name};")
        return True

    def relapse_probability(self, patient: Patient) -> float:
        tb = patient.tb
        months = patient.month - tb.month_of_treatment_stop
        if months < self.cfg.relapse_min_months:
            return 0.0
        if patient.hiv_positive:
            factor = self.tables.get('tb_relapse_cd4_multiplier', patient.cd4_stratum)
        else:
            factor = self.cfg.relapse_hiv_neg_multiplier
        rate = (factor * self.cfg.relapse_rate_multiplier
                * math.exp(-min(months, self.cfg.relapse_threshold_months)
                           * self.cfg.relapse_exponent))
        if tb.state == TBState.TREAT_DEFAULT:
            rate *= self.cfg.default_relapse_multiplier
        return rate_to_prob(rate)

    def roll_relapse(self, patient: Patient) -> bool:
        tb = patient.tb
        eligible = ((tb.state == TBState.PREV_TREATED and not tb.is_self_cured)
                    or tb.state == TBState.TREAT_DEFAULT)
        if not eligible:
            return False
        prob = self.relapse_probability(patient)
        if self.ctx.draw(streams.TB_RELAPSE, patient) >= prob:
            return False
        self.activate(patient, streams.TB_RELAPSE_PULMONARY)
        self.ctx.trace(patient, 1,
                       f"**{patient.month} TB RELAPSE {tb.state.name};")
        return True

    def register_mortality(self, patient: Patient) -> None:
        tb = patient.tb
        if not tb.is_active:
            return
        site = (TBSite.PULMONARY if tb.state == TBState.ACTIVE_PULM
                else TBSite.EXTRAPULMONARY)
        if patient.hiv_positive:
            ratio = self.tables.get('tb_death_rate_ratio_hiv_pos',
                                    patient.cd4_stratum, site)
        else:
            ratio = self.tables.get('tb_death_rate_ratio_hiv_neg', site)
        if tb.on_treatment:
            ratio *= self.cfg.on_treatment_death_multiplier
        if ratio > 1.0:
            add_mortality_risk(patient, DeathCause.ACTIVE_TB, ratio,
                               self.tables.get('death_cost', DeathCause.ACTIVE_TB))
