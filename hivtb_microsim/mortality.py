"""Mortality module: competing-risk death resolution for one month.

Each month the module adds its own hazards (risk factors, HIV) to those
registered earlier in the month by other modules, then resolves death:

  bg_rate  = −ln(1 − p_background)
  p_death  = 1 − exp(−bg_rate × Π ratio_k)

Cause selection (hazard-weighted, deterministic):
  - per-cause rate: bg_rate for background, bg_rate × ratio_k for each
    registered hazard k
  - rates are normalized and a second uniform draw picks a cause by
    cumulative sum, background first, then in registration order
  - identical inputs and draws therefore always give the same cause;
    causes with equal rates are resolved by registration order, which is
    fixed by the updater order

Patients older than MAX_AGE_YEARS die of background causes without a
draw. All registrations are cleared once the month is resolved.
"""

from __future__ import annotations

import logging
import math
from typing import List, Tuple

from hivtb_microsim import rng as streams
from hivtb_microsim.context import SimContext
from hivtb_microsim.patient import (
    Patient,
    add_mortality_risk,
    clear_mortality_risks,
    increment_cost,
)
from hivtb_microsim.probability import (
    combine_incremental,
    effective_multiplier,
    prob_rate_multiply,
    prob_to_rate,
    rate_to_prob,
)
from hivtb_microsim.types import (
    MAX_AGE_YEARS,
    N_RISK_FACTORS,
    CostCategory,
    DeathCause,
    ResponseCategory,
)

logger = logging.getLogger(__name__)


class MortalityUpdater:
    """Monthly competing-risk mortality."""

    def __init__(self, ctx: SimContext):
        self.ctx = ctx
        self.cfg = ctx.config.mortality
        self.tables = ctx.tables

    def perform_initial_updates(self, patient: Patient) -> None:
        """No mortality hazards carry over from before entry."""
        clear_mortality_risks(patient)

    def perform_monthly_updates(self, patient: Patient) -> None:
        try:
            if int(patient.age_years) > MAX_AGE_YEARS:
                self.kill(patient, DeathCause.BACKGROUND,
                          self.tables.get('death_cost', DeathCause.BACKGROUND))
                return
            self.register_risk_factor_hazards(patient)
            self.register_hiv_hazard(patient)
            self.resolve_death(patient)
        finally:
            clear_mortality_risks(patient)

    # ── Hazards ──────────────────────────────────────────────────────

    def background_probability(self, patient: Patient) -> float:
        p = self.tables.get('background_mortality', patient.gender,
                            int(patient.age_years))
        if self.cfg.background_modifier_type == 'incremental':
            return combine_incremental(p, self.cfg.background_modifier)
        return prob_rate_multiply(p, self.cfg.background_modifier)

    def register_risk_factor_hazards(self, patient: Patient) -> None:
        for risk_factor in range(N_RISK_FACTORS):
            if not patient.risk_factors[risk_factor]:
                continue
            ratio = self.tables.get('risk_factor_death_rate_ratio', risk_factor)
            if ratio > 1.0:
                cause = DeathCause.for_risk_factor(risk_factor)
                add_mortality_risk(patient, cause, ratio,
                                   self.tables.get('death_cost', cause))

    def hiv_rate_ratio(self, patient: Patient) -> float:
        ratio = self.tables.get('hiv_death_rate_ratio', patient.cd4_stratum)
        if patient.care.art_effect_applies:
            ratio *= effective_multiplier(
                patient.care.response_factor(ResponseCategory.MORTALITY),
                self.tables.get('art_death_rate_ratio', patient.cd4_stratum),
            )
        return ratio

    def register_hiv_hazard(self, patient: Patient) -> None:
        if not patient.hiv_positive:
            return
        ratio = self.hiv_rate_ratio(patient)
        if ratio > 1.0:
            add_mortality_risk(patient, DeathCause.HIV, ratio,
                               self.tables.get('death_cost', DeathCause.HIV))

    # ── Resolution ───────────────────────────────────────────────────

    def cause_rates(self, patient: Patient, bg_rate: float) -> List[Tuple[DeathCause, float, float]]:
        """(cause, rate, death cost) in selection order."""
        rates = [(DeathCause.BACKGROUND, bg_rate,
                  self.tables.get('death_cost', DeathCause.BACKGROUND))]
        for risk in patient.mortality_risks:
            rates.append((risk.cause, bg_rate * risk.rate_ratio, risk.death_cost))
        return rates

    def death_probability(self, patient: Patient) -> float:
        bg_rate = prob_to_rate(self.background_probability(patient))
        ratio_product = 1.0
        for risk in patient.mortality_risks:
            ratio_product *= risk.rate_ratio
        return rate_to_prob(bg_rate * ratio_product)

    def select_cause(self, patient: Patient, u: float) -> Tuple[DeathCause, float]:
        """Hazard-weighted cause for a uniform u in [0, 1)."""
        bg_rate = prob_to_rate(self.background_probability(patient))
        rates = self.cause_rates(patient, bg_rate)
        total = sum(rate for _, rate, _ in rates)
        if math.isinf(total):
            return rates[0][0], rates[0][2]
        cumulative = 0.0
        for cause, rate, cost in rates:
            cumulative += rate / total
            if u < cumulative:
                return cause, cost
        cause, _, cost = rates[-1]
        return cause, cost

    def resolve_death(self, patient: Patient) -> bool:
        p_death = self.death_probability(patient)
        if self.ctx.draw(streams.MORTALITY_DEATH, patient) >= p_death:
            return False
        cause, cost = self.select_cause(
            patient, self.ctx.draw(streams.MORTALITY_CAUSE, patient))
        self.kill(patient, cause, cost)
        return True

    def kill(self, patient: Patient, cause: DeathCause, cost: float) -> None:
        patient.alive = False
        patient.cause_of_death = cause
        patient.month_of_death = patient.month
        increment_cost(patient, CostCategory.DEATH, cost)
        self.ctx.trace(patient, 1,
                       f"**{patient.month} DEATH {cause.name}, "
                       f"age {patient.age_months // 12}y;")
        logger.debug("patient %d died of %s in month %d",
                     patient.patient_id, cause.name, patient.month)
