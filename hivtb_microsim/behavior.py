"""Behavior module: loss to follow-up (LTFU) from HIV care and return to care.

A lost patient may return once min_months_remain_lost have passed:
  logit_RTC = background + cd4·[CD4 < threshold] + acute_oi·[acute OI]
              + tb_positive·[active TB]
  p_RTC     = 1 / (1 + e^−logit_RTC)
The acute-OI flag is an input owned by the caller (opportunistic
infections are not modelled here); it defaults to False.

A patient in care may be lost. The response propensity
  inverse_logit(base + background + female + Σ risk-factor logits)
is mapped through the response thresholds onto the LTFU probability
range: low propensity gives the first value, high propensity the second.

With integrated HIV/TB clinics, TB care follows HIV care in both
directions.
"""

from __future__ import annotations

from hivtb_microsim import rng as streams
from hivtb_microsim.context import SimContext
from hivtb_microsim.patient import Patient, set_tb_ltfu, set_tb_rtc
from hivtb_microsim.probability import interpolate_response, inverse_logit
from hivtb_microsim.types import Gender, LTFUState, TBCareState


class BehaviorUpdater:
    """Monthly HIV-care LTFU / return-to-care transitions."""

    def __init__(self, ctx: SimContext):
        self.ctx = ctx
        self.cfg = ctx.config.behavior
        self.tb_integrated = (ctx.config.tb.enabled
                              and ctx.config.tb_clinical.enabled
                              and ctx.config.tb_clinical.integrated)

    def perform_initial_updates(self, patient: Patient) -> None:
        """Sample the patient's baseline response logit."""
        if not self.cfg.use_ltfu:
            return
        patient.care.ltfu_state = LTFUState.NEVER_LOST
        patient.care.response_base_logit = self.ctx.draw_gaussian(
            self.cfg.response_base_mean, self.cfg.response_base_sd,
            streams.BEHAVIOR_RESPONSE_BASE, patient)

    def perform_monthly_updates(self, patient: Patient) -> None:
        if not self.cfg.use_ltfu or not patient.care.in_hiv_care:
            return
        if patient.care.ltfu_state == LTFUState.LOST:
            self.roll_return_to_care(patient)
        else:
            self.roll_ltfu(patient)

    # ── Return to care ───────────────────────────────────────────────

    def rtc_probability(self, patient: Patient) -> float:
        logit_rtc = self.cfg.rtc_logit_background
        if patient.true_cd4 < self.cfg.cd4_threshold_rtc:
            logit_rtc += self.cfg.rtc_logit_cd4
        if patient.has_acute_oi:
            logit_rtc += self.cfg.rtc_logit_acute_oi
        if patient.tb.is_active:
            logit_rtc += self.cfg.rtc_logit_tb_positive
        return inverse_logit(logit_rtc)

    def roll_return_to_care(self, patient: Patient) -> bool:
        care = patient.care
        if patient.month - care.month_of_ltfu_change < self.cfg.min_months_remain_lost:
            return False
        if self.ctx.draw(streams.BEHAVIOR_RTC, patient) >= self.rtc_probability(patient):
            return False
        care.ltfu_state = LTFUState.RETURNED
        care.month_of_ltfu_change = patient.month
        care.next_cd4_test_month = patient.month
        if self.tb_integrated and patient.tb.care_state == TBCareState.LTFU:
            set_tb_rtc(patient)
        self.ctx.trace(patient, 1, f"**{patient.month} RETURN TO CARE;")
        return True

    # ── Loss to follow-up ────────────────────────────────────────────

    def response_propensity(self, patient: Patient) -> float:
        logit = patient.care.response_base_logit + self.cfg.ltfu_logit_background
        if patient.gender == Gender.FEMALE:
            logit += self.cfg.ltfu_logit_female
        for r, present in enumerate(patient.risk_factors):
            if present:
                logit += self.cfg.ltfu_logit_risk_factors[r]
        return inverse_logit(logit)

    def ltfu_probability(self, patient: Patient) -> float:
        return interpolate_response(self.response_propensity(patient),
                                    self.cfg.ltfu_response_thresholds,
                                    self.cfg.ltfu_response_values)

    def roll_ltfu(self, patient: Patient) -> bool:
        if self.ctx.draw(streams.BEHAVIOR_LTFU, patient) >= self.ltfu_probability(patient):
            return False
        care = patient.care
        care.ltfu_state = LTFUState.LOST
        care.month_of_ltfu_change = patient.month
        if self.tb_integrated and patient.tb.care_state == TBCareState.IN_CARE:
            set_tb_ltfu(patient)
        self.ctx.trace(patient, 1, f"**{patient.month} LOST TO FOLLOW-UP;")
        return True
