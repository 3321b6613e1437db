"""
Unit tests for token sampling

Covers temperature scaling, nucleus (top-p) filtering, the weighted draw
and reproducibility with seeded generators.
"""

import numpy as np
import pytest

from models.sampling import (
    apply_temperature,
    make_sampler,
    sample_token,
    softmax,
    top_p_filter,
    weighted_choice,
)


class TestTemperature:
    """Test temperature scaling"""

    def test_divides_logits(self):
        scaled = apply_temperature(np.array([2.0, 4.0]), 2.0)
        assert scaled.tolist() == [1.0, 2.0]

    @pytest.mark.parametrize("temperature", [0, -0.5, float("nan"), float("inf")])
    def test_rejects_non_positive_or_non_finite(self, temperature):
        with pytest.raises(ValueError):
            apply_temperature(np.zeros(3), temperature)

    def test_lower_temperature_sharpens(self):
        logits = np.array([1.0, 2.0, 3.0])
        cold = softmax(apply_temperature(logits, 0.5))
        warm = softmax(apply_temperature(logits, 2.0))
        assert cold[2] > warm[2]


class TestTopPFilter:
    """Test nucleus filtering"""

    def test_keeps_smallest_prefix_reaching_mass(self):
        probs = np.array([0.15, 0.5, 0.05, 0.3])
        indices, weights = top_p_filter(probs, 0.7)

        assert indices.tolist() == [1, 3]
        assert weights == pytest.approx([0.625, 0.375])

    def test_full_mass_keeps_every_nonzero_token(self):
        probs = np.array([0.4, 0.3, 0.2, 0.1])
        indices, _ = top_p_filter(probs, 1.0)
        assert sorted(indices.tolist()) == [0, 1, 2, 3]

    def test_zero_probability_tokens_never_kept(self):
        probs = np.array([0.6, 0.0, 0.4, 0.0])
        indices, weights = top_p_filter(probs, 1.0)

        assert sorted(indices.tolist()) == [0, 2]
        assert np.all(weights > 0)

    def test_tiny_top_p_keeps_most_likely_token(self):
        probs = np.array([0.2, 0.7, 0.1])
        indices, weights = top_p_filter(probs, 1e-9)

        assert indices.tolist() == [1]
        assert weights.tolist() == [1.0]

    @pytest.mark.parametrize("top_p", [0, -0.1, 1.5])
    def test_rejects_out_of_range(self, top_p):
        with pytest.raises(ValueError):
            top_p_filter(np.array([1.0]), top_p)

    def test_rejects_all_zero(self):
        with pytest.raises(ValueError, match="degenerate"):
            top_p_filter(np.zeros(4), 0.9)


class TestWeightedChoice:
    """Test inverse-CDF sampling"""

    def test_single_weight(self):
        rng = np.random.default_rng(0)
        assert weighted_choice(np.array([1.0]), rng) == 0

    def test_frequencies_follow_weights(self):
        rng = np.random.default_rng(1234)
        weights = np.array([0.75, 0.25])
        draws = [weighted_choice(weights, rng) for _ in range(4000)]
        share = draws.count(0) / len(draws)
        assert 0.70 < share < 0.80


class TestSampleToken:
    """Test end-to-end sampling from logits"""

    def test_result_always_in_nucleus(self):
        logits = np.log(np.array([0.5, 0.3, 0.15, 0.05]))
        rng = np.random.default_rng(7)
        nucleus = {0, 1}

        for _ in range(500):
            assert sample_token(logits, 1.0, 0.7, rng) in nucleus

    def test_every_nonzero_token_reachable_with_full_mass(self):
        logits = np.log(np.array([0.4, 0.3, 0.2, 0.1]))
        rng = np.random.default_rng(42)

        seen = {sample_token(logits, 1.0, 1.0, rng) for _ in range(2000)}
        assert seen == {0, 1, 2, 3}

    def test_masked_tokens_never_sampled(self):
        logits = np.array([1.0, -np.inf, 1.0, -np.inf])
        rng = np.random.default_rng(3)

        seen = {sample_token(logits, 1.0, 1.0, rng) for _ in range(300)}
        assert seen <= {0, 2}

    def test_same_seed_same_tokens(self):
        logits = np.log(np.array([0.25, 0.25, 0.25, 0.25]))
        rng_a = np.random.default_rng(99)
        rng_b = np.random.default_rng(99)

        run_a = [sample_token(logits, 0.8, 0.95, rng_a) for _ in range(50)]
        run_b = [sample_token(logits, 0.8, 0.95, rng_b) for _ in range(50)]
        assert run_a == run_b
        assert len(set(run_a)) > 1

    @pytest.mark.parametrize("bad", [np.nan, np.inf])
    def test_broken_logits_raise(self, bad):
        logits = np.array([0.0, bad, 1.0])
        with pytest.raises(ValueError, match="degenerate"):
            sample_token(logits, 1.0, 1.0, np.random.default_rng(0))

    def test_empty_logits_raise(self):
        with pytest.raises(ValueError):
            sample_token(np.array([]), 1.0, 1.0, np.random.default_rng(0))

    def test_accepts_batched_shape(self):
        logits = np.zeros((1, 5))
        logits[0, 3] = 100.0
        assert sample_token(logits, 1.0, 0.9, np.random.default_rng(0)) == 3


class TestMakeSampler:
    """Test sampler construction"""

    def test_validates_eagerly(self):
        with pytest.raises(ValueError):
            make_sampler(0.0, 0.9)
        with pytest.raises(ValueError):
            make_sampler(0.7, 0.0)

    def test_bound_sampler(self):
        sampler = make_sampler(0.7, 0.9)
        logits = np.zeros(10)
        logits[4] = 50.0
        assert sampler(logits, np.random.default_rng(0)) == 4
