"""Probability arithmetic shared by every updater.

Implements:
  - Log-odds composition: p → logit(p) + Σ deltas → probability
  - Rate/probability conversion for monthly hazards
  - Probability scaling by a rate multiplier: 1 − (1 − p)^m
  - Treatment-response interpolation: 1 − rf × (1 − multiplier)
  - Cumulative selection from a discrete distribution

Log-odds composition keeps the result inside [0, 1] no matter how many
risk-factor, treatment and history deltas are summed. Probabilities of
exactly 0 or 1 are fixed points of the composition.
"""

from __future__ import annotations

import math
from typing import Iterable, Sequence


# ═══════════════════════════════════════════════════════════════════════
# LOG-ODDS
# ═══════════════════════════════════════════════════════════════════════

def logit(p: float) -> float:
    """Log-odds ln(p / (1 − p)); ±inf at the boundaries."""
    if p <= 0.0:
        return -math.inf
    if p >= 1.0:
        return math.inf
    return math.log(p / (1.0 - p))


def inverse_logit(x: float) -> float:
    """Logistic function 1 / (1 + e^−x), stable for large |x|."""
    if x >= 0.0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def compose_probability(p: float, deltas: Iterable[float] = ()) -> float:
    """Add logit deltas to a base probability.

    Args:
        p: Base probability in [0, 1].
        deltas: Log-odds adjustments (risk factors, history, ...).

    Returns:
        Adjusted probability in [0, 1]. A base of 0 or 1 is returned
        unchanged since no finite delta moves a certain outcome.
    """
    if p <= 0.0:
        return 0.0
    if p >= 1.0:
        return 1.0
    total = sum(deltas)
    if total == 0.0:
        return p
    return inverse_logit(logit(p) + total)


# ═══════════════════════════════════════════════════════════════════════
# RATES
# ═══════════════════════════════════════════════════════════════════════

def prob_to_rate(p: float) -> float:
    """Monthly probability → constant hazard rate, −ln(1 − p)."""
    if p >= 1.0:
        return math.inf
    return -math.log(1.0 - p)


def rate_to_prob(rate: float) -> float:
    """Constant hazard rate → monthly probability, 1 − e^−rate."""
    return 1.0 - math.exp(-rate)


def prob_rate_multiply(p: float, multiplier: float) -> float:
    """Scale the hazard underlying p by a multiplier.

    Equivalent to rate_to_prob(prob_to_rate(p) × multiplier), written as
    1 − (1 − p)^m so that m = 0 gives 0 and m = 1 returns p exactly.
    """
    if multiplier == 0.0:
        return 0.0
    if multiplier == 1.0:
        return p
    return 1.0 - (1.0 - p) ** multiplier


def combine_incremental(p: float, extra: float) -> float:
    """Probability of either of two independent events."""
    return p + extra - p * extra


def effective_multiplier(response_factor: float, table_multiplier: float) -> float:
    """Interpolate a treatment multiplier by the regimen's response factor.

    response_factor = 1 gives the full table effect, 0 gives no effect:
        1 − rf × (1 − multiplier)
    """
    return 1.0 - response_factor * (1.0 - table_multiplier)


# ═══════════════════════════════════════════════════════════════════════
# DISCRETE SELECTION
# ═══════════════════════════════════════════════════════════════════════

def select_from_distribution(weights: Sequence[float], u: float) -> int:
    """Pick an index by cumulative sum of (normalized) weights.

    Args:
        weights: Non-negative weights; need not sum to 1.
        u: Uniform draw in [0, 1).

    Returns:
        First index whose cumulative share exceeds u. Rounding slack at
        the top end falls to the last index with positive weight.

    Raises:
        ValueError: If all weights are zero.
    """
    total = float(sum(weights))
    if total <= 0.0:
        raise ValueError("cannot select from an all-zero distribution")
    cumulative = 0.0
    last_positive = 0
    for i, w in enumerate(weights):
        if w <= 0.0:
            continue
        last_positive = i
        cumulative += w / total
        if u < cumulative:
            return i
    return last_positive


def interpolate_response(propensity: float, thresholds: Sequence[float],
                         values: Sequence[float]) -> float:
    """Map a response propensity onto [values[0], values[1]].

    Below thresholds[0] the lower value applies, above thresholds[1] the
    upper value, linear in between.
    """
    lower, upper = thresholds
    if propensity > upper:
        factor = 1.0
    elif propensity > lower:
        factor = (propensity - lower) / (upper - lower)
    else:
        factor = 0.0
    return values[0] + factor * (values[1] - values[0])
