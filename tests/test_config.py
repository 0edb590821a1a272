"""Tests for hivtb_microsim.config — configuration loading and validation."""

import pytest
import yaml

from hivtb_microsim.config import (
    BehaviorSection,
    CD4TestSection,
    SimulationConfig,
    SimulationSection,
    TBClinicalSection,
    config_to_dict,
    deep_merge,
    default_config,
    load_config,
    validate_config,
)


# ── deep_merge tests ──────────────────────────────────────────────────

class TestDeepMerge:
    def test_simple_override(self):
        assert deep_merge({'a': 1, 'b': 2}, {'b': 3}) == {'a': 1, 'b': 3}

    def test_nested_merge(self):
        base = {'x': {'a': 1, 'b': 2}, 'y': 10}
        result = deep_merge(base, {'x': {'b': 3, 'c': 4}})
        assert result == {'x': {'a': 1, 'b': 3, 'c': 4}, 'y': 10}

    def test_override_dict_with_scalar(self):
        assert deep_merge({'a': {'nested': 1}}, {'a': 'replaced'}) == {'a': 'replaced'}

    def test_modifies_base_in_place(self):
        base = {'a': 1}
        deep_merge(base, {'b': 2})
        assert base == {'a': 1, 'b': 2}


# ── default_config tests ─────────────────────────────────────────────

class TestDefaultConfig:
    def test_creates_valid_config(self):
        assert isinstance(default_config(), SimulationConfig)

    def test_default_values(self):
        config = default_config()
        assert config.simulation.seed == 42
        assert config.simulation.horizon_months == 1200
        assert config.simulation.qol_calculation == 'additive'
        assert config.simulation.cd4_strata_bounds == [50.0, 100.0, 200.0, 350.0, 500.0]
        assert config.comorbidity.dependent_onset is False
        assert config.tb_clinical.integrated is False
        assert config.behavior.use_ltfu is False
        assert config.mortality.background_modifier_type == 'multiplicative'

    def test_to_dict_round_trip(self):
        config = default_config()
        data = config_to_dict(config)
        assert data['cd4_test']['failed_tests_to_confirm'] == 2
        assert yaml.safe_load(yaml.safe_dump(data)) == data


# ── load_config tests ────────────────────────────────────────────────

class TestLoadConfig:
    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "base.yaml"
        path.write_text(yaml.safe_dump({
            'simulation': {'seed': 7, 'horizon_months': 240},
            'cohort': {'cd4_mean': 200.0},
        }))
        config = load_config(path)
        assert config.simulation.seed == 7
        assert config.simulation.horizon_months == 240
        assert config.cohort.cd4_mean == 200.0
        assert config.cohort.cd4_sd == 150.0

    def test_scenario_then_overrides(self, tmp_path):
        base = tmp_path / "base.yaml"
        scenario = tmp_path / "scenario.yaml"
        base.write_text(yaml.safe_dump({'tb': {'proph_efficacy': 0.5,
                                               'relapse_exponent': 0.1}}))
        scenario.write_text(yaml.safe_dump({'tb': {'proph_efficacy': 0.7}}))
        config = load_config(base, scenario,
                             overrides={'tb': {'relapse_exponent': 0.2}})
        assert config.tb.proph_efficacy == 0.7
        assert config.tb.relapse_exponent == 0.2

    def test_missing_scenario_is_skipped(self, tmp_path):
        base = tmp_path / "base.yaml"
        base.write_text("")
        config = load_config(base, tmp_path / "absent.yaml")
        assert config.simulation.seed == 42

    def test_unknown_keys_ignored(self, tmp_path):
        base = tmp_path / "base.yaml"
        base.write_text(yaml.safe_dump({'simulation': {'seed': 3, 'colour': 'red'},
                                        'unknown_section': {'x': 1}}))
        assert load_config(base).simulation.seed == 3

    def test_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nonexistent.yaml")

    def test_invalid_values_rejected(self, tmp_path):
        base = tmp_path / "base.yaml"
        base.write_text(yaml.safe_dump({'cohort': {'female_fraction': 1.5}}))
        with pytest.raises(ValueError, match="female_fraction"):
            load_config(base)


# ── validate_config tests ────────────────────────────────────────────

class TestValidateConfig:
    def test_bad_qol_option(self):
        config = SimulationConfig(simulation=SimulationSection(qol_calculation='max'))
        with pytest.raises(ValueError, match="qol_calculation"):
            validate_config(config)

    def test_cd4_bounds_length(self):
        config = SimulationConfig(simulation=SimulationSection(cd4_strata_bounds=[100, 200]))
        with pytest.raises(ValueError, match="cd4_strata_bounds"):
            validate_config(config)

    def test_cd4_bounds_increasing(self):
        config = SimulationConfig(
            simulation=SimulationSection(cd4_strata_bounds=[50, 100, 100, 350, 500]))
        with pytest.raises(ValueError, match="strictly increasing"):
            validate_config(config)

    def test_trace_without_patients_warns(self):
        config = SimulationConfig(simulation=SimulationSection(trace_level=2))
        with pytest.warns(UserWarning, match="trace_patients"):
            validate_config(config)

    def test_unknown_diagnostics_criterion(self):
        config = SimulationConfig(
            tb_clinical=TBClinicalSection(diagnostics_criteria=['symptoms', 'xray']))
        with pytest.raises(ValueError, match="xray"):
            validate_config(config)

    def test_symptoms_not_a_proph_criterion(self):
        config = SimulationConfig(
            tb_clinical=TBClinicalSection(proph_start_criteria=['symptoms']))
        with pytest.raises(ValueError):
            validate_config(config)

    def test_bad_policy(self):
        config = SimulationConfig(tb_clinical=TBClinicalSection(diagnostics_policy='xor'))
        with pytest.raises(ValueError, match="policy"):
            validate_config(config)

    def test_ltfu_thresholds_increasing(self):
        config = SimulationConfig(
            behavior=BehaviorSection(ltfu_response_thresholds=[0.8, 0.2]))
        with pytest.raises(ValueError, match="thresholds"):
            validate_config(config)

    def test_cd4_confirm_count(self):
        config = SimulationConfig(cd4_test=CD4TestSection(failed_tests_to_confirm=0))
        with pytest.raises(ValueError, match="failed_tests_to_confirm"):
            validate_config(config)

    def test_incremental_modifier_is_probability(self):
        config = default_config()
        config.mortality.background_modifier_type = 'incremental'
        config.mortality.background_modifier = 2.0
        with pytest.raises(ValueError):
            validate_config(config)
