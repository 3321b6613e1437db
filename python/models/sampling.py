"""
Token sampling - temperature scaling, nucleus (top-p) filtering and a
weighted draw from a per-session random generator.
"""

from typing import Callable, Tuple

import numpy as np


def apply_temperature(logits: np.ndarray, temperature: float) -> np.ndarray:
    """Divide logits by the temperature; temperature must be strictly positive"""
    if not np.isfinite(temperature) or temperature <= 0:
        raise ValueError(f"temperature must be a positive finite number, got {temperature}")
    return np.asarray(logits, dtype=np.float64) / float(temperature)


def softmax(logits: np.ndarray) -> np.ndarray:
    logits = np.asarray(logits, dtype=np.float64)
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    total = exp.sum()
    if not np.isfinite(total) or total <= 0:
        raise ValueError("degenerate distribution: softmax normalizer is not positive")
    return exp / total


def top_p_filter(probs: np.ndarray, top_p: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Keep the smallest set of most-probable tokens whose mass reaches top_p.

    Returns (token_indices, renormalized_weights). At least one token is
    always kept, and tokens with zero probability never are.
    """
    if not 0 < top_p <= 1:
        raise ValueError(f"top_p must be in (0, 1], got {top_p}")

    probs = np.asarray(probs, dtype=np.float64)
    order = np.argsort(-probs, kind="stable")
    sorted_probs = probs[order]

    nonzero = int(np.count_nonzero(sorted_probs > 0))
    if nonzero == 0:
        raise ValueError("degenerate distribution: all probabilities are zero")

    cumulative = np.cumsum(sorted_probs)
    keep = int(np.searchsorted(cumulative, top_p, side="left")) + 1
    keep = max(1, min(keep, nonzero))

    kept = sorted_probs[:keep]
    return order[:keep], kept / kept.sum()


def weighted_choice(weights: np.ndarray, rng: np.random.Generator) -> int:
    """Inverse-CDF draw of an index in proportion to weights"""
    cumulative = np.cumsum(weights)
    u = rng.random() * cumulative[-1]
    index = int(np.searchsorted(cumulative, u, side="right"))
    return min(index, len(weights) - 1)


def sample_token(logits: np.ndarray, temperature: float, top_p: float, rng: np.random.Generator) -> int:
    """
    Sample one token id from raw logits.

    Raises:
        ValueError: On invalid parameters or a degenerate distribution
    """
    logits = np.asarray(logits, dtype=np.float64).reshape(-1)
    if logits.size == 0:
        raise ValueError("degenerate distribution: empty logits")
    # -inf logits are masked tokens; NaN or +inf means the forward pass broke
    if np.isnan(logits).any() or np.isposinf(logits).any():
        raise ValueError("degenerate distribution: logits contain NaN or +inf")

    probs = softmax(apply_temperature(logits, temperature))
    indices, weights = top_p_filter(probs, top_p)
    return int(indices[weighted_choice(weights, rng)])


def make_sampler(temperature: float, top_p: float) -> Callable[[np.ndarray, np.random.Generator], int]:
    """Bind sampling parameters once per session"""
    apply_temperature(np.zeros(1), temperature)  # validate eagerly
    if not 0 < top_p <= 1:
        raise ValueError(f"top_p must be in (0, 1], got {top_p}")

    def sampler(logits: np.ndarray, rng: np.random.Generator) -> int:
        return sample_token(logits, temperature, top_p, rng)

    return sampler
