"""Tests for hivtb_microsim.rng — per-(patient, stream) draws and scripted sources."""

import pickle

import numpy as np
import pytest

from hivtb_microsim import rng as streams
from hivtb_microsim.rng import FixedSequenceSource, RandomSource


class TestRandomSource:
    def test_reproducibility(self):
        a, b = RandomSource(42), RandomSource(42)
        seq_a = [a.draw(streams.MORTALITY_DEATH, 3) for _ in range(20)]
        seq_b = [b.draw(streams.MORTALITY_DEATH, 3) for _ in range(20)]
        assert seq_a == seq_b

    def test_values_in_unit_interval(self):
        src = RandomSource(1)
        vals = [src.draw(streams.TB_INFECTION, 0) for _ in range(500)]
        assert min(vals) >= 0.0
        assert max(vals) < 1.0

    def test_different_seeds_differ(self):
        a, b = RandomSource(42), RandomSource(43)
        assert a.draw(streams.COHORT_AGE, 0) != b.draw(streams.COHORT_AGE, 0)

    def test_streams_are_independent(self):
        """Extra draws on one stream leave another stream's sequence intact."""
        a, b = RandomSource(7), RandomSource(7)
        for _ in range(10):
            a.draw(streams.CONDITION_INCIDENCE, 0)
        seq_a = [a.draw(streams.TB_ACTIVATION, 0) for _ in range(5)]
        seq_b = [b.draw(streams.TB_ACTIVATION, 0) for _ in range(5)]
        assert seq_a == seq_b

    def test_patients_are_independent(self):
        src = RandomSource(7)
        assert src.draw(streams.TB_ACTIVATION, 0) != src.draw(streams.TB_ACTIVATION, 1)

    def test_gaussian_moments(self):
        src = RandomSource(11)
        vals = np.array([src.draw_gaussian(10.0, 2.0, streams.COHORT_CD4, 0)
                         for _ in range(4000)])
        assert vals.mean() == pytest.approx(10.0, abs=0.15)
        assert vals.std() == pytest.approx(2.0, abs=0.15)

    def test_zero_sd_returns_mean(self):
        src = RandomSource(11)
        assert src.draw_gaussian(5.0, 0.0, streams.COHORT_CD4, 0) == 5.0

    def test_release_restarts_stream(self):
        src = RandomSource(3)
        first = src.draw(streams.TB_RELAPSE, 9)
        src.draw(streams.TB_RELAPSE, 9)
        src.release(9)
        assert src.draw(streams.TB_RELAPSE, 9) == first

    def test_release_only_affects_one_patient(self):
        src = RandomSource(3)
        src.draw(streams.TB_RELAPSE, 1)
        expected = RandomSource(3)
        expected.draw(streams.TB_RELAPSE, 1)
        src.release(2)
        assert src.draw(streams.TB_RELAPSE, 1) == expected.draw(streams.TB_RELAPSE, 1)

    def test_negative_seed_rejected(self):
        with pytest.raises(ValueError):
            RandomSource(-1)


class TestCheckpointing:
    def test_snapshot_restore_resumes_exactly(self):
        src = RandomSource(5)
        for _ in range(3):
            src.draw(streams.CD4_TEST_NOISE, 0)
        snap = src.state_snapshot()
        expected = [src.draw(streams.CD4_TEST_NOISE, 0) for _ in range(5)]

        src.restore_state(snap)
        assert [src.draw(streams.CD4_TEST_NOISE, 0) for _ in range(5)] == expected

    def test_snapshot_is_picklable(self):
        src = RandomSource(5)
        src.draw(streams.CD4_TEST_NOISE, 0)
        snap = pickle.loads(pickle.dumps(src.state_snapshot()))
        expected = src.draw(streams.CD4_TEST_NOISE, 0)

        fresh = RandomSource(5)
        fresh.restore_state(snap)
        assert fresh.draw(streams.CD4_TEST_NOISE, 0) == expected


class TestFixedSequenceSource:
    def test_scripted_values_then_default(self):
        src = FixedSequenceSource(default=0.9, by_stream={streams.TB_INFECTION: [0.1, 0.2]})
        assert src.draw(streams.TB_INFECTION, 0) == 0.1
        assert src.draw(streams.TB_INFECTION, 0) == 0.2
        assert src.draw(streams.TB_INFECTION, 0) == 0.9
        assert src.draw(streams.TB_ACTIVATION, 0) == 0.9

    def test_push_appends(self):
        src = FixedSequenceSource()
        src.push(streams.TB_RTC, 0.3)
        src.push(streams.TB_RTC, 0.4)
        assert [src.draw(streams.TB_RTC, 0) for _ in range(3)] == [0.3, 0.4, 0.5]

    def test_gaussian_median_is_mean(self):
        src = FixedSequenceSource(default=0.5)
        assert src.draw_gaussian(12.0, 3.0, streams.COHORT_AGE, 0) == pytest.approx(12.0)

    def test_gaussian_quantile(self):
        src = FixedSequenceSource(by_stream={streams.COHORT_AGE: [0.975, 0.025]})
        assert src.draw_gaussian(10.0, 2.0, streams.COHORT_AGE, 0) == pytest.approx(13.92, abs=1e-2)
        assert src.draw_gaussian(10.0, 2.0, streams.COHORT_AGE, 0) == pytest.approx(6.08, abs=1e-2)

    def test_gaussian_zero_sd(self):
        src = FixedSequenceSource(default=0.9)
        assert src.draw_gaussian(4.0, 0.0, streams.COHORT_AGE, 0) == 4.0

    def test_gaussian_tails_are_finite(self):
        src = FixedSequenceSource(by_stream={streams.COHORT_AGE: [0.0]})
        assert np.isfinite(src.draw_gaussian(0.0, 1.0, streams.COHORT_AGE, 0))

    def test_records_calls(self):
        src = FixedSequenceSource()
        src.draw(streams.MORTALITY_DEATH, 4)
        src.draw_gaussian(0.0, 1.0, streams.CD4_TEST_BIAS, 4)
        assert src.calls == [(streams.MORTALITY_DEATH, 4), (streams.CD4_TEST_BIAS, 4)]
        assert src.count(streams.MORTALITY_DEATH) == 1
        assert src.count(streams.MORTALITY_CAUSE) == 0

    def test_default_must_be_uniform(self):
        with pytest.raises(ValueError):
            FixedSequenceSource(default=1.0)
