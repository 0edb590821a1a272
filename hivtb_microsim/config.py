"""Configuration system for the HIV/TB microsimulation.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → run overrides

Scalar policy parameters live here; the multi-key probability, cost and
QOL tables live in tables.py and are loaded separately.

References:
  - cohort-model input sheets: simulation, cohort, comorbidity, TB,
    TB clinical, mortality, LTFU and CD4 monitoring tabs
"""

from __future__ import annotations

import dataclasses
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from hivtb_microsim.types import (
    N_CD4_STRATA,
    N_DEPENDENT_AGE_CATS,
    N_RISK_FACTORS,
    ResponseCategory,
)


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Top-level simulation timing and control."""
    seed: int = 42
    horizon_months: int = 1200        # Maximum months simulated per patient
    trace_level: int = 0              # 0 = no trace; higher = more detail
    trace_patients: int = 0           # Patients with id < this are traced
    qol_calculation: str = 'additive'  # 'additive' or 'marginal'
    cd4_strata_bounds: List[float] = field(
        default_factory=lambda: [50.0, 100.0, 200.0, 350.0, 500.0]
    )


@dataclass
class CohortSection:
    """Initial patient characteristics."""
    age_mean_months: float = 420.0
    age_sd_months: float = 120.0
    age_min_months: int = 216
    female_fraction: float = 0.5
    hiv_positive_fraction: float = 1.0
    cd4_mean: float = 350.0           # cells/µL
    cd4_sd: float = 150.0
    risk_factor_prevalence: List[float] = field(
        default_factory=lambda: [0.0] * N_RISK_FACTORS
    )
    on_art_fraction: float = 0.0      # HIV-positive patients starting on ART
    response_factors: List[float] = field(
        default_factory=lambda: [1.0] * len(ResponseCategory)
    )


@dataclass
class ComorbiditySection:
    """Chronic comorbidity prevalence, incidence and staging controls."""
    enabled: bool = True
    dependent_onset: bool = False     # Chain mode: onset tied to patient age
    dependent_age_bounds_months: List[int] = field(
        default_factory=lambda: [180 + 60 * i for i in range(N_DEPENDENT_AGE_CATS - 1)]
    )
    months_since_previous_dependent: int = 9
    stage_duration_sqrt_transform: bool = False


@dataclass
class TBSection:
    """TB natural history."""
    enabled: bool = True
    infection_enabled: bool = True
    activation_threshold_months: int = 24   # Recent vs remote infection
    prob_pulmonary_hiv_neg: float = 0.8
    prob_sputum_hi: float = 0.5
    prob_immune_reactive_on_infection: float = 0.9
    self_cure_enabled: bool = False
    self_cure_mean_months: float = 36.0
    self_cure_sd_months: float = 0.0
    proph_efficacy: float = 0.6
    latent_treatment_efficacy: float = 0.9
    relapse_rate_multiplier: float = 0.01
    relapse_exponent: float = 0.05
    relapse_threshold_months: int = 36
    relapse_min_months: int = 0
    default_relapse_multiplier: float = 2.0
    relapse_hiv_neg_multiplier: float = 1.0
    on_treatment_death_multiplier: float = 0.5


@dataclass
class TBClinicalSection:
    """TB diagnostics, treatment, prophylaxis and TB-care LTFU policy."""
    enabled: bool = True
    integrated: bool = False          # TB care delivered inside HIV clinic
    # Diagnostics
    diagnostics_criteria: List[str] = field(default_factory=lambda: ['symptoms'])
    diagnostics_policy: str = 'or'    # 'or' or 'and'
    diagnostics_start_month: int = 0
    diagnostics_interval_months: int = 6
    diagnostics_cd4_threshold: float = 200.0
    post_treatment_hiatus_months: int = 6
    test_sensitivity: float = 0.8
    test_specificity: float = 0.98
    test_cost: float = 20.0
    result_delay_months: int = 1
    prob_dst: float = 0.0
    dst_delay_months: int = 2
    # Treatment
    empiric_at_test_order: bool = False
    empiric_duration_months: int = 2
    retreat_after_failure: bool = True
    visit_frequency_months: int = 1
    med_frequency_months: int = 1
    untreated_cost: float = 0.0
    # TB-care LTFU
    use_tb_ltfu: bool = True
    max_months_ltfu: int = 24
    # Prophylaxis
    proph_enabled: bool = False
    proph_start_criteria: List[str] = field(default_factory=lambda: ['hiv_positive'])
    proph_start_policy: str = 'or'
    proph_cd4_threshold: float = 350.0
    prob_proph_eligible: float = 1.0
    proph_lag_mean_months: float = 0.0
    proph_lag_sd_months: float = 0.0
    proph_duration_months: int = 6
    proph_max_starts: int = 1
    proph_monthly_cost: float = 5.0
    proph_stop_on_ltfu: bool = True


@dataclass
class MortalitySection:
    """Background mortality modifiers."""
    background_modifier_type: str = 'multiplicative'  # or 'incremental'
    background_modifier: float = 1.0


@dataclass
class BehaviorSection:
    """Loss to follow-up and return to care."""
    use_ltfu: bool = False
    response_base_mean: float = 0.0   # Baseline response logit (per patient)
    response_base_sd: float = 0.0
    ltfu_logit_background: float = 0.0
    ltfu_logit_female: float = 0.0
    ltfu_logit_risk_factors: List[float] = field(
        default_factory=lambda: [0.0] * N_RISK_FACTORS
    )
    ltfu_response_thresholds: List[float] = field(default_factory=lambda: [0.2, 0.8])
    ltfu_response_values: List[float] = field(default_factory=lambda: [0.02, 0.002])
    min_months_remain_lost: int = 3
    rtc_logit_background: float = -3.0
    rtc_logit_cd4: float = 0.0        # Added when true CD4 < cd4_threshold_rtc
    rtc_logit_acute_oi: float = 0.0
    rtc_logit_tb_positive: float = 0.0
    cd4_threshold_rtc: float = 200.0


@dataclass
class CD4TestSection:
    """CD4 monitoring schedule and measurement error."""
    enabled: bool = True
    test_interval_months: int = 6
    n_initial_art_tests: int = 2      # Monthly tests right after ART start
    sd_percent: float = 0.0           # Relative measurement noise
    bias_mean: float = 0.0
    bias_sd: float = 0.0
    cost: float = 20.0
    stop_monitoring_above: Optional[float] = None
    failure_fraction: float = 0.5     # Failed test: observed < fraction × peak
    failed_tests_to_confirm: int = 2


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    cohort: CohortSection = field(default_factory=CohortSection)
    comorbidity: ComorbiditySection = field(default_factory=ComorbiditySection)
    tb: TBSection = field(default_factory=TBSection)
    tb_clinical: TBClinicalSection = field(default_factory=TBClinicalSection)
    mortality: MortalitySection = field(default_factory=MortalitySection)
    behavior: BehaviorSection = field(default_factory=BehaviorSection)
    cd4_test: CD4TestSection = field(default_factory=CD4TestSection)


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

_SECTION_MAP = {
    'simulation': SimulationSection,
    'cohort': CohortSection,
    'comorbidity': ComorbiditySection,
    'tb': TBSection,
    'tb_clinical': TBClinicalSection,
    'mortality': MortalitySection,
    'behavior': BehaviorSection,
    'cd4_test': CD4TestSection,
}

DIAGNOSTICS_CRITERIA = {'symptoms', 'hiv_positive', 'cd4_below', 'immune_reactive'}
PROPH_CRITERIA = {'hiv_positive', 'cd4_below', 'immune_reactive', 'prev_treated'}


def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Args:
        base: Base dictionary (modified in place).
        override: Override dictionary.

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    sections = {}
    for key, cls in _SECTION_MAP.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()
    return SimulationConfig(**sections)


def config_to_dict(config: SimulationConfig) -> Dict:
    """Plain-dict form of a config, suitable for yaml.safe_dump."""
    return dataclasses.asdict(config)


def _check_probability(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be in [0, 1], got {value}")


def _check_criteria(name: str, criteria: List[str], valid: set, policy: str) -> None:
    unknown = set(criteria) - valid
    if unknown:
        raise ValueError(
            f"{name} has unknown criteria {sorted(unknown)}; "
            f"valid: {sorted(valid)}"
        )
    if policy not in ('or', 'and'):
        raise ValueError(f"{name} policy must be 'or' or 'and', got '{policy}'")


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ValueError on failure.

    Checks:
      - Enumerated string options are known
      - List parameters have the table-dimension lengths
      - Probabilities lie in [0, 1] and durations are non-negative
      - CD4 strata bounds are increasing
    """
    sim = config.simulation
    if sim.seed < 0:
        raise ValueError("simulation.seed must be non-negative")
    if sim.horizon_months < 1:
        raise ValueError(
            f"simulation.horizon_months must be >= 1, got {sim.horizon_months}"
        )
    valid_qol = {'additive', 'marginal'}
    if sim.qol_calculation not in valid_qol:
        raise ValueError(
            f"simulation.qol_calculation must be one of {valid_qol}, "
            f"got '{sim.qol_calculation}'"
        )
    bounds = list(sim.cd4_strata_bounds)
    if len(bounds) != N_CD4_STRATA - 1:
        raise ValueError(
            f"simulation.cd4_strata_bounds must have {N_CD4_STRATA - 1} "
            f"elements, got {len(bounds)}"
        )
    if any(a >= b for a, b in zip(bounds, bounds[1:])):
        raise ValueError(
            f"simulation.cd4_strata_bounds must be strictly increasing, got {bounds}"
        )
    if sim.trace_level > 0 and sim.trace_patients == 0:
        warnings.warn(
            "simulation.trace_level > 0 but trace_patients = 0; "
            "no patient will be traced.",
            UserWarning,
            stacklevel=2,
        )

    # Cohort
    c = config.cohort
    _check_probability("cohort.female_fraction", c.female_fraction)
    _check_probability("cohort.hiv_positive_fraction", c.hiv_positive_fraction)
    _check_probability("cohort.on_art_fraction", c.on_art_fraction)
    if c.age_sd_months < 0 or c.cd4_sd < 0:
        raise ValueError("cohort standard deviations must be non-negative")
    if len(c.risk_factor_prevalence) != N_RISK_FACTORS:
        raise ValueError(
            f"cohort.risk_factor_prevalence must have {N_RISK_FACTORS} "
            f"elements, got {len(c.risk_factor_prevalence)}"
        )
    for i, p in enumerate(c.risk_factor_prevalence):
        _check_probability(f"cohort.risk_factor_prevalence[{i}]", p)
    if len(c.response_factors) != len(ResponseCategory):
        raise ValueError(
            f"cohort.response_factors must have {len(ResponseCategory)} "
            f"elements (one per ResponseCategory), got {len(c.response_factors)}"
        )
    for i, rf in enumerate(c.response_factors):
        if not 0.0 <= rf <= 1.0:
            raise ValueError(
                f"cohort.response_factors[{i}] must be in [0, 1], got {rf}"
            )

    # Comorbidity
    cm = config.comorbidity
    dep = list(cm.dependent_age_bounds_months)
    if len(dep) != N_DEPENDENT_AGE_CATS - 1:
        raise ValueError(
            f"comorbidity.dependent_age_bounds_months must have "
            f"{N_DEPENDENT_AGE_CATS - 1} elements, got {len(dep)}"
        )
    if any(a >= b for a, b in zip(dep, dep[1:])):
        raise ValueError(
            "comorbidity.dependent_age_bounds_months must be strictly increasing"
        )
    if cm.months_since_previous_dependent < 0:
        raise ValueError(
            "comorbidity.months_since_previous_dependent must be >= 0"
        )

    # TB natural history
    tb = config.tb
    for name in ('prob_pulmonary_hiv_neg', 'prob_sputum_hi',
                 'prob_immune_reactive_on_infection', 'proph_efficacy',
                 'latent_treatment_efficacy'):
        _check_probability(f"tb.{name}", getattr(tb, name))
    if tb.activation_threshold_months < 0 or tb.relapse_threshold_months < 0:
        raise ValueError("tb threshold months must be non-negative")
    if tb.relapse_rate_multiplier < 0 or tb.relapse_exponent < 0:
        raise ValueError("tb relapse parameters must be non-negative")

    # TB clinical
    tc = config.tb_clinical
    _check_criteria("tb_clinical.diagnostics_criteria", tc.diagnostics_criteria,
                    DIAGNOSTICS_CRITERIA, tc.diagnostics_policy)
    _check_criteria("tb_clinical.proph_start_criteria", tc.proph_start_criteria,
                    PROPH_CRITERIA, tc.proph_start_policy)
    for name in ('test_sensitivity', 'test_specificity', 'prob_dst',
                 'prob_proph_eligible'):
        _check_probability(f"tb_clinical.{name}", getattr(tc, name))
    for name in ('result_delay_months', 'dst_delay_months',
                 'empiric_duration_months', 'max_months_ltfu',
                 'post_treatment_hiatus_months', 'diagnostics_interval_months'):
        if getattr(tc, name) < 0:
            raise ValueError(f"tb_clinical.{name} must be >= 0")
    if tc.visit_frequency_months < 1 or tc.med_frequency_months < 1:
        raise ValueError("tb_clinical cost frequencies must be >= 1 month")

    # Mortality
    valid_modifiers = {'multiplicative', 'incremental'}
    if config.mortality.background_modifier_type not in valid_modifiers:
        raise ValueError(
            f"mortality.background_modifier_type must be one of "
            f"{valid_modifiers}, got '{config.mortality.background_modifier_type}'"
        )
    if config.mortality.background_modifier < 0:
        raise ValueError("mortality.background_modifier must be non-negative")
    if (config.mortality.background_modifier_type == 'incremental'
            and config.mortality.background_modifier > 1):
        raise ValueError(
            "mortality.background_modifier is a probability when incremental"
        )

    # Behavior
    b = config.behavior
    if len(b.ltfu_logit_risk_factors) != N_RISK_FACTORS:
        raise ValueError(
            f"behavior.ltfu_logit_risk_factors must have {N_RISK_FACTORS} elements"
        )
    lo, hi = b.ltfu_response_thresholds
    if not lo < hi:
        raise ValueError(
            f"behavior.ltfu_response_thresholds must be increasing, got {[lo, hi]}"
        )
    for i, v in enumerate(b.ltfu_response_values):
        _check_probability(f"behavior.ltfu_response_values[{i}]", v)
    if b.min_months_remain_lost < 0:
        raise ValueError("behavior.min_months_remain_lost must be >= 0")

    # CD4 testing
    t = config.cd4_test
    if t.test_interval_months < 1:
        raise ValueError("cd4_test.test_interval_months must be >= 1")
    if t.sd_percent < 0 or t.bias_sd < 0:
        raise ValueError("cd4_test noise parameters must be non-negative")
    if t.failed_tests_to_confirm < 1:
        raise ValueError("cd4_test.failed_tests_to_confirm must be >= 1")
    _check_probability("cd4_test.failure_fraction", t.failure_fraction)


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → overrides.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        overrides: Optional dict of run-specific overrides.

    Returns:
        Validated SimulationConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ValueError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if overrides is not None:
        deep_merge(config_dict, overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config
