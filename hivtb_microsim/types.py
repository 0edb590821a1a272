"""Core enumerations and dimension constants for the HIV/TB microsimulation.

This module is the SINGLE SOURCE OF TRUTH for:
  - Table dimensions (conditions, stages, age categories, risk factors)
  - CD4Stratum, Gender, TBState, TBStrain, TBTracker, TBCareState enumerations
  - LTFUState, ResponseCategory, CostCategory, DeathCause enumerations
  - Sentinel values shared by the patient aggregate and the updaters

All modules import these types from here. Every table axis in tables.py is
sized from the constants below.

References:
  - cohort-model inputs: comorbidity, TB and mortality table layouts
  - DeathCause ordering: background first, then HIV, TB, comorbidities,
    risk factors (cause-selection order in mortality.py)
"""

from enum import IntEnum


# ═══════════════════════════════════════════════════════════════════════
# DIMENSIONS
# ═══════════════════════════════════════════════════════════════════════

N_CONDITIONS = 10            # Chronic comorbidity conditions
N_CONDITION_STAGES = 3       # Time-ordered severity stages per condition
N_CONDITION_AGE_CATS = 7     # Per-condition age categories (6 bounds)
N_DEPENDENT_AGE_CATS = 15    # Age categories for dependent-onset lookup (14 bounds)
N_RISK_FACTORS = 5           # Boolean risk factors carried by each patient
N_GENDERS = 2
N_CD4_STRATA = 6
N_TB_STATES = 6
N_TB_STRAINS = 3
N_TB_TRACKERS = 3
N_TB_TREATMENT_LINES = 3     # Line k is the regimen for strain k
N_TB_SITES = 2               # Pulmonary, extrapulmonary

MAX_AGE_YEARS = 100          # Older patients die of background causes

NO_MONTH = -1                # Undefined month (stage not reached, event never happened)


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class Gender(IntEnum):
    MALE   = 0
    FEMALE = 1


class CD4Stratum(IntEnum):
    """Immune-status buckets used as table keys.

    Boundaries are configurable (simulation.cd4_strata_bounds); the
    defaults are 50, 100, 200, 350 and 500 cells/µL.
    """
    VLO = 0   # Very low
    LO  = 1   # Low
    MLO = 2   # Medium-low
    MHI = 3   # Medium-high
    HI  = 4   # High
    VHI = 5   # Very high


class TBState(IntEnum):
    """TB natural-history states.

    UNINFECTED   → LATENT            (infection)
    LATENT       → ACTIVE_*          (activation)
    ACTIVE_*     → PREV_TREATED      (treatment success or self-cure)
    ACTIVE_*     → TREAT_DEFAULT     (lost during treatment)
    PREV_TREATED → ACTIVE_*          (relapse, not after self-cure)
    TREAT_DEFAULT→ ACTIVE_*          (relapse)
    non-active   → LATENT            (reinfection)
    """
    UNINFECTED       = 0
    LATENT           = 1
    ACTIVE_PULM      = 2
    ACTIVE_EXTRAPULM = 3
    PREV_TREATED     = 4
    TREAT_DEFAULT    = 5

    @property
    def is_active(self) -> bool:
        return self in (TBState.ACTIVE_PULM, TBState.ACTIVE_EXTRAPULM)


class TBStrain(IntEnum):
    DS  = 0   # Drug-susceptible
    MDR = 1   # Multi-drug resistant
    XDR = 2   # Extensively drug resistant


class TBTracker(IntEnum):
    """Sub-flags carried alongside the TB state."""
    SPUTUM_HI       = 0
    IMMUNE_REACTIVE = 1
    SYMPTOMS        = 2


class TBSite(IntEnum):
    PULMONARY      = 0
    EXTRAPULMONARY = 1


class TBCareState(IntEnum):
    UNLINKED = 0
    IN_CARE  = 1
    LTFU     = 2


class LTFUState(IntEnum):
    NEVER_LOST = 0
    LOST       = 1
    RETURNED   = 2


class ResponseCategory(IntEnum):
    """Effect categories of the current regimen's response-factor vector."""
    SUPPRESSION = 0
    CD4         = 1
    MORTALITY   = 2
    COMORBIDITY = 3


class CostCategory(IntEnum):
    COMORBIDITY  = 0
    TB_TESTING   = 1
    TB_TREATMENT = 2
    TB_PROPH     = 3
    TB_UNTREATED = 4
    CD4_TEST     = 5
    DEATH        = 6


class DeathCause(IntEnum):
    """Cause of death; also the key of a registered mortality hazard."""
    BACKGROUND     = 0
    HIV            = 1
    ACTIVE_TB      = 2
    COMORBIDITY_1  = 3
    COMORBIDITY_2  = 4
    COMORBIDITY_3  = 5
    COMORBIDITY_4  = 6
    COMORBIDITY_5  = 7
    COMORBIDITY_6  = 8
    COMORBIDITY_7  = 9
    COMORBIDITY_8  = 10
    COMORBIDITY_9  = 11
    COMORBIDITY_10 = 12
    RISK_FACTOR_1  = 13
    RISK_FACTOR_2  = 14
    RISK_FACTOR_3  = 15
    RISK_FACTOR_4  = 16
    RISK_FACTOR_5  = 17

    @classmethod
    def for_condition(cls, condition: int) -> 'DeathCause':
        """Cause for comorbidity index 0..N_CONDITIONS-1."""
        if not 0 <= condition < N_CONDITIONS:
            raise IndexError(f"condition index {condition} out of range")
        return cls(cls.COMORBIDITY_1 + condition)

    @classmethod
    def for_risk_factor(cls, risk_factor: int) -> 'DeathCause':
        """Cause for risk-factor index 0..N_RISK_FACTORS-1."""
        if not 0 <= risk_factor < N_RISK_FACTORS:
            raise IndexError(f"risk factor index {risk_factor} out of range")
        return cls(cls.RISK_FACTOR_1 + risk_factor)


N_DEATH_CAUSES = len(DeathCause)
