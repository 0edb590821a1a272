"""Seeded random draw source for reproducible patient simulations.

Uses NumPy's SeedSequence → PCG64 hierarchy to guarantee:
  - One independent stream per (patient, stream id) pair
  - Bit-exact replay with the same master seed
  - Adding/removing draws in one stream doesn't affect any other stream
  - Patients are independent, so cohorts can be split across processes

A value is fully determined by (master seed, stream id, patient id, call
ordinal within that stream). Each decision point in the updaters owns a
stream id constant declared below.

References:
  - NumPy docs: numpy.random.SeedSequence
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
from scipy.stats import norm


# ═══════════════════════════════════════════════════════════════════════
# STREAM IDENTIFIERS
# ═══════════════════════════════════════════════════════════════════════

# Cohort creation
COHORT_AGE = 10010
COHORT_GENDER = 10020
COHORT_HIV = 10030
COHORT_CD4 = 10040
COHORT_RISK_FACTOR = 10050
COHORT_ART = 10060

# Behavior
BEHAVIOR_RESPONSE_BASE = 30005
RISK_FACTOR_INCIDENCE = 30010
BEHAVIOR_RTC = 30020
BEHAVIOR_LTFU = 30030

# CD4 testing
CD4_TEST_NOISE = 50010
CD4_TEST_BIAS = 50013

# TB clinical management
TB_TEST_RESULT = 60010
TB_DST_ORDER = 60020
TB_EMPIRIC_OUTCOME = 60030
TB_PROPH_ELIGIBLE = 60160
TB_PROPH_LAG = 60170
TB_TREATMENT_OUTCOME = 80030
TB_RESISTANCE = 80040
TB_LTFU = 80050
TB_RTC = 80060

# Mortality
MORTALITY_DEATH = 120010
MORTALITY_CAUSE = 120020

# TB natural history
TB_INITIAL_STATE = 140010
TB_INITIAL_STRAIN = 140020
TB_INITIAL_TRACKER = 140025
TB_SYMPTOMS = 140065
TB_INFECTION = 140090
TB_INFECTION_STRAIN = 140100
TB_IMMUNE_REACTIVE = 140105
TB_ACTIVATION = 140140
TB_ACTIVATION_PULMONARY = 140150
TB_SPUTUM_HI = 140160
TB_SELF_CURE_TIME = 140170
TB_RELAPSE = 140180
TB_RELAPSE_PULMONARY = 140190

# Comorbidities
CONDITION_PREVALENCE = 150010
CONDITION_ONSET = 150020
CONDITION_INCIDENCE = 150030
CONDITION_STAGE_DURATION = 150040


# ═══════════════════════════════════════════════════════════════════════
# SEEDED SOURCE
# ═══════════════════════════════════════════════════════════════════════

class RandomSource:
    """Deterministic per-(patient, stream) uniform and Gaussian draws.

    Generators are created lazily on first use and dropped by release()
    once a patient's simulation ends.

    Example:
        >>> rng = RandomSource(42)
        >>> rng.draw(MORTALITY_DEATH, patient_id=7)  # reproducible
    """

    def __init__(self, master_seed: int):
        if master_seed < 0:
            raise ValueError(f"master_seed must be non-negative, got {master_seed}")
        self.master_seed = int(master_seed)
        self._streams: Dict[Tuple[int, int], np.random.Generator] = {}

    def _generator(self, stream_id: int, patient_id: int) -> np.random.Generator:
        key = (patient_id, stream_id)
        gen = self._streams.get(key)
        if gen is None:
            if patient_id < 0:
                raise ValueError(f"patient_id must be non-negative, got {patient_id}")
            ss = np.random.SeedSequence([self.master_seed, patient_id, stream_id])
            gen = np.random.Generator(np.random.PCG64(ss))
            self._streams[key] = gen
        return gen

    def draw(self, stream_id: int, patient_id: int) -> float:
        """Uniform value in [0, 1)."""
        return float(self._generator(stream_id, patient_id).random())

    def draw_gaussian(self, mean: float, sd: float,
                      stream_id: int, patient_id: int) -> float:
        """Normal(mean, sd) value. sd = 0 still consumes one draw."""
        z = float(self._generator(stream_id, patient_id).standard_normal())
        return mean + sd * z

    def release(self, patient_id: int) -> None:
        """Forget all generators belonging to one patient."""
        for key in [k for k in self._streams if k[0] == patient_id]:
            del self._streams[key]

    def state_snapshot(self) -> Dict[Tuple[int, int], dict]:
        """Capture generator states for checkpointing.

        Returns a dict of {(patient_id, stream_id): state_dict} that can be
        pickled and passed to restore_state() to resume exactly.
        """
        return {key: gen.bit_generator.state for key, gen in self._streams.items()}

    def restore_state(self, states: Mapping[Tuple[int, int], dict]) -> None:
        """Restore generator states from state_snapshot().

        Streams absent from the live source are recreated from their seed
        before the saved state is applied.
        """
        for (patient_id, stream_id), state in states.items():
            self._generator(stream_id, patient_id).bit_generator.state = state


# ═══════════════════════════════════════════════════════════════════════
# FIXED-SEQUENCE SOURCE (tests and scripted scenarios)
# ═══════════════════════════════════════════════════════════════════════

_U_EPS = 1e-12


class FixedSequenceSource:
    """Draw source that replays scripted values.

    Values queued for a stream id are returned in order; once a stream's
    queue is empty (or for streams never scripted) `default` is returned.
    Gaussian draws map the next uniform through the inverse normal CDF,
    so u = 0.5 yields the mean exactly.

    Every call is recorded in `calls` as (stream_id, patient_id).

    Args:
        default: Uniform returned for unscripted draws.
        by_stream: Mapping of stream id → iterable of uniforms.
    """

    def __init__(self, default: float = 0.5,
                 by_stream: Optional[Mapping[int, Iterable[float]]] = None):
        if not 0.0 <= default < 1.0:
            raise ValueError(f"default must be in [0, 1), got {default}")
        self.default = default
        self._queues: Dict[int, List[float]] = defaultdict(list)
        self.calls: List[Tuple[int, int]] = []
        for stream_id, values in (by_stream or {}).items():
            self.push(stream_id, *values)

    def push(self, stream_id: int, *values: float) -> None:
        """Queue more uniforms for a stream."""
        self._queues[stream_id].extend(float(v) for v in values)

    def draw(self, stream_id: int, patient_id: int) -> float:
        self.calls.append((stream_id, patient_id))
        queue = self._queues.get(stream_id)
        if queue:
            return queue.pop(0)
        return self.default

    def draw_gaussian(self, mean: float, sd: float,
                      stream_id: int, patient_id: int) -> float:
        u = self.draw(stream_id, patient_id)
        u = min(max(u, _U_EPS), 1.0 - _U_EPS)
        return mean + sd * float(norm.ppf(u))

    def release(self, patient_id: int) -> None:
        """No per-patient state to drop."""

    def count(self, stream_id: int) -> int:
        """Number of draws made on one stream."""
        return sum(1 for s, _ in self.calls if s == stream_id)
