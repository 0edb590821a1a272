"""Monthly patient simulation driver.

One patient at a time:
  - Creation: age, gender, HIV status, CD4, risk factors and ART drawn
    from the cohort section (COHORT_* streams)
  - Initial updates: each updater's perform_initial_updates at month 0
  - Monthly loop: begin_month (month and age advance, last month's
    hazards and QOL reset) → each updater's perform_monthly_updates in
    order, stopping as soon as the patient dies
  - Ends at death or the configured horizon; the patient's random
    streams are then released

Patients share nothing but the read-only context, so a cohort is just a
sequence of independent runs.

Update order (mortality must follow every hazard-registering module):
  comorbidity → TB natural history → TB clinical → mortality
  → behavior → CD4 testing
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Type

from hivtb_microsim import rng as streams
from hivtb_microsim.behavior import BehaviorUpdater
from hivtb_microsim.cd4_test import CD4TestUpdater, cd4_stratum_for
from hivtb_microsim.comorbidity import ComorbidityUpdater
from hivtb_microsim.config import SimulationConfig, default_config
from hivtb_microsim.context import DrawSource, PatientUpdater, SimContext
from hivtb_microsim.mortality import MortalityUpdater
from hivtb_microsim.patient import Patient, clear_mortality_risks, set_risk_factor
from hivtb_microsim.rng import RandomSource
from hivtb_microsim.tables import InputTables
from hivtb_microsim.tb_clinical import TBClinicalUpdater
from hivtb_microsim.tb_disease import TBDiseaseUpdater
from hivtb_microsim.trace import Tracer
from hivtb_microsim.types import (
    N_RISK_FACTORS,
    CostCategory,
    DeathCause,
    Gender,
    LTFUState,
    TBState,
)

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_ORDER = (
    ComorbidityUpdater,
    TBDiseaseUpdater,
    TBClinicalUpdater,
    MortalityUpdater,
    BehaviorUpdater,
    CD4TestUpdater,
)


# ═══════════════════════════════════════════════════════════════════════
# OUTCOME RECORD
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class PatientOutcome:
    """End-of-run summary for one patient."""
    patient_id: int
    gender: Gender
    hiv_positive: bool
    alive: bool
    months_simulated: int
    cause_of_death: Optional[DeathCause] = None
    month_of_death: int = -1
    final_age_months: int = 0
    costs: Dict[str, float] = field(default_factory=dict)   # By CostCategory name
    total_cost: float = 0.0
    qol_modifier: float = 0.0
    conditions: List[int] = field(default_factory=list)     # Condition indices held
    tb_state: TBState = TBState.UNINFECTED
    tb_ever_infected: bool = False
    tb_treatments: int = 0
    ltfu_state: LTFUState = LTFUState.NEVER_LOST

    @classmethod
    def from_patient(cls, patient: Patient) -> 'PatientOutcome':
        return cls(
            patient_id=patient.patient_id,
            gender=patient.gender,
            hiv_positive=patient.hiv_positive,
            alive=patient.alive,
            months_simulated=patient.month,
            cause_of_death=patient.cause_of_death,
            month_of_death=patient.month_of_death,
            final_age_months=patient.age_months,
            costs={c.name: float(patient.costs[c]) for c in CostCategory},
            total_cost=patient.total_cost,
            qol_modifier=patient.qol_modifier,
            conditions=[int(i) for i in patient.has_condition.nonzero()[0]],
            tb_state=TBState(patient.tb.state),
            tb_ever_infected=patient.tb.ever_infected,
            tb_treatments=patient.tb.n_treatments,
            ltfu_state=patient.care.ltfu_state,
        )


# ═══════════════════════════════════════════════════════════════════════
# PATIENT CREATION
# ═══════════════════════════════════════════════════════════════════════

def build_updaters(ctx: SimContext,
                   order: Sequence[Type[PatientUpdater]] = DEFAULT_UPDATE_ORDER,
                   ) -> List[PatientUpdater]:
    return [updater_cls(ctx) for updater_cls in order]


def create_patient(ctx: SimContext, patient_id: int) -> Patient:
    """Draw a new patient's baseline characteristics.

    HIV-negative patients keep true CD4 0 and the top stratum; only
    HIV-positive patients are in HIV care.
    """
    cohort = ctx.config.cohort
    sim = ctx.config.simulation
    rng = ctx.rng

    age = rng.draw_gaussian(cohort.age_mean_months, cohort.age_sd_months,
                            streams.COHORT_AGE, patient_id)
    female = rng.draw(streams.COHORT_GENDER, patient_id) < cohort.female_fraction
    patient = Patient(
        patient_id=patient_id,
        gender=Gender.FEMALE if female else Gender.MALE,
        age_months=max(cohort.age_min_months, int(round(age))),
        trace_enabled=patient_id < sim.trace_patients,
    )

    for risk_factor in range(N_RISK_FACTORS):
        if rng.draw(streams.COHORT_RISK_FACTOR, patient_id) < cohort.risk_factor_prevalence[risk_factor]:
            set_risk_factor(patient, risk_factor)

    patient.hiv_positive = rng.draw(streams.COHORT_HIV, patient_id) < cohort.hiv_positive_fraction
    if patient.hiv_positive:
        patient.true_cd4 = max(0.0, rng.draw_gaussian(
            cohort.cd4_mean, cohort.cd4_sd, streams.COHORT_CD4, patient_id))
        patient.cd4_stratum = cd4_stratum_for(patient.true_cd4, sim.cd4_strata_bounds)
        patient.care.in_hiv_care = True
        patient.care.response_factors[:] = cohort.response_factors
        if rng.draw(streams.COHORT_ART, patient_id) < cohort.on_art_fraction:
            patient.care.art_effect_applies = True
            patient.care.month_art_start = patient.month

    ctx.trace(patient, 1,
              f"  {patient.month} NEW PATIENT {patient_id}: {patient.gender.name}, "
              f"age {patient.age_months // 12}y, "
              f"HIV {'+' if patient.hiv_positive else '-'}, CD4 {patient.true_cd4:.0f};")
    return patient


def begin_month(patient: Patient) -> None:
    """Advance the clock and reset per-month accumulators."""
    patient.month += 1
    patient.age_months += 1
    patient.month_qol_modifier = 0.0
    clear_mortality_risks(patient)


# ═══════════════════════════════════════════════════════════════════════
# SIMULATION
# ═══════════════════════════════════════════════════════════════════════

def simulate_patient(ctx: SimContext, patient_id: int,
                     updaters: Optional[List[PatientUpdater]] = None,
                     ) -> PatientOutcome:
    """Run one patient from creation to death or the horizon.

    Args:
        ctx: Simulation context.
        patient_id: Identifier; also selects the patient's random streams.
        updaters: Constructed updaters in call order. Defaults to
            DEFAULT_UPDATE_ORDER built on ctx.

    Returns:
        PatientOutcome for the finished patient.
    """
    if updaters is None:
        updaters = build_updaters(ctx)
    horizon = ctx.config.simulation.horizon_months

    try:
        patient = create_patient(ctx, patient_id)
        for updater in updaters:
            updater.perform_initial_updates(patient)

        while patient.alive and patient.month < horizon:
            begin_month(patient)
            for updater in updaters:
                updater.perform_monthly_updates(patient)
                if not patient.alive:
                    break
    finally:
        ctx.rng.release(patient_id)

    return PatientOutcome.from_patient(patient)


def run_cohort(
    n_patients: int,
    config: Optional[SimulationConfig] = None,
    tables: Optional[InputTables] = None,
    tracer: Optional[Tracer] = None,
    rng: Optional[DrawSource] = None,
    first_patient_id: int = 0,
) -> List[PatientOutcome]:
    """Simulate n_patients independent patients sequentially.

    Args:
        n_patients: Number of patients.
        config: SimulationConfig; uses default_config() if None.
        tables: InputTables; all-neutral tables if None.
        tracer: Trace sink; built from simulation.trace_level if None.
        rng: Random source; RandomSource(simulation.seed) if None.
        first_patient_id: Identifier of the first patient.

    Returns:
        One PatientOutcome per patient, in identifier order.
    """
    if config is None:
        config = default_config()
    ctx = SimContext(
        config=config,
        tables=tables if tables is not None else InputTables(),
        rng=rng if rng is not None else RandomSource(config.simulation.seed),
        tracer=tracer if tracer is not None else Tracer(level=config.simulation.trace_level),
    )
    updaters = build_updaters(ctx)

    logger.info("simulating %d patients (seed %d, horizon %d months)",
                n_patients, config.simulation.seed, config.simulation.horizon_months)
    outcomes = [simulate_patient(ctx, first_patient_id + i, updaters)
                for i in range(n_patients)]
    n_dead = sum(1 for o in outcomes if not o.alive)
    logger.info("finished %d patients: %d died within horizon", n_patients, n_dead)
    return outcomes
