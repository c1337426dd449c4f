"""
Unit tests for token sampling.

Tests verify:
  1. Greedy decoding (temperature=0 or top_k=1) returns the argmax
  2. Top-k restricts to exactly k candidates
  3. Top-p (nucleus) sampling keeps the crossing token
  4. A seeded generator makes sampling reproducible
  5. log_prob is scored under the unfiltered distribution
"""

import sys
import os
import math

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_rt.sampling import (
    has_non_finite,
    new_generator,
    perplexity,
    sample_token,
    sample_top_p,
)


class TestGreedy:
    """Tests for deterministic argmax decoding."""

    def test_temperature_zero(self):
        """Temperature=0 should always return the argmax token."""
        logits = torch.tensor([[1.0, 5.0, 3.0, 2.0]])
        token1, _ = sample_token(logits, temperature=0.0, top_k=0, top_p=1.0)
        token2, _ = sample_token(logits, temperature=0.0, top_k=0, top_p=1.0)
        assert token1 == 1
        assert token2 == 1

    def test_top_k_one(self):
        """top_k=1 is greedy whatever the temperature."""
        logits = torch.tensor([0.1, 0.2, 9.0, 0.3])
        for _ in range(20):
            token, _ = sample_token(logits, temperature=2.0, top_k=1, top_p=1.0)
            assert token == 2

    def test_returns_python_int(self):
        token, log_prob = sample_token(torch.tensor([1.0, 2.0]), 0.0, 0, 1.0)
        assert isinstance(token, int)
        assert isinstance(log_prob, float)


class TestFiltering:
    """Tests for temperature, top-k and top-p."""

    def test_temperature_sharpening(self):
        """Low temperature should make distribution sharper."""
        logits = torch.tensor([[1.0, 2.0, 3.0, 4.0]])
        gen = new_generator(0)

        samples_low = []
        for _ in range(100):
            t, _ = sample_token(logits, temperature=0.01, top_k=0, top_p=1.0, generator=gen)
            samples_low.append(t)

        assert samples_low.count(3) > 90, "Low temperature should heavily favor argmax"

    def test_top_k_restricts_vocab(self):
        """Top-k should only allow the top k tokens."""
        logits = torch.tensor([[10.0, 5.0, 3.0, 1.0, 0.5, 0.1]])
        gen = new_generator(1)

        samples = set()
        for _ in range(100):
            t, _ = sample_token(logits, temperature=1.0, top_k=2, top_p=1.0, generator=gen)
            samples.add(t)

        assert samples.issubset({0, 1}), f"Top-k=2 sampled tokens outside top 2: {samples}"

    def test_top_k_larger_than_vocab(self):
        logits = torch.tensor([1.0, 1.0, 1.0])
        token, _ = sample_token(logits, temperature=1.0, top_k=50, top_p=1.0,
                                generator=new_generator(0))
        assert 0 <= token < 3

    def test_input_logits_untouched(self):
        logits = torch.tensor([3.0, 1.0, 2.0, 0.5])
        before = logits.clone()
        sample_token(logits, temperature=0.7, top_k=2, top_p=0.9, generator=new_generator(0))
        assert torch.equal(logits, before)

    def test_top_p_basic(self):
        """Top-p should restrict to minimum set exceeding threshold."""
        probs = torch.tensor([0.5, 0.4, 0.05, 0.03, 0.02])
        gen = new_generator(2)

        samples = set()
        for _ in range(100):
            samples.add(sample_top_p(probs.clone(), p=0.85, generator=gen))

        # With p=0.85, only tokens 0 and 1 should be sampled (cumsum = 0.9)
        assert samples.issubset({0, 1}), f"Top-p=0.85 sampled: {samples}"

    def test_top_p_includes_crossing_token(self):
        """The token that makes cumsum cross p should be included."""
        probs = torch.tensor([0.3, 0.3, 0.2, 0.1, 0.1])
        gen = new_generator(3)

        samples = set()
        for _ in range(200):
            samples.add(sample_top_p(probs.clone(), p=0.55, generator=gen))

        assert 0 in samples and 1 in samples
        assert samples.issubset({0, 1})

    def test_top_p_one_disables(self):
        """top_p=1.0 should include all tokens."""
        probs = torch.tensor([0.25, 0.25, 0.25, 0.25])
        gen = new_generator(4)

        samples = set()
        for _ in range(200):
            samples.add(sample_top_p(probs.clone(), p=1.0, generator=gen))

        assert len(samples) == 4

    def test_top_p_zero_keeps_argmax(self):
        probs = torch.tensor([0.1, 0.6, 0.3])
        for _ in range(20):
            assert sample_top_p(probs.clone(), p=0.0) == 1


class TestDeterminism:
    """A session-owned generator makes draws reproducible."""

    def _draws(self, seed, n=50):
        gen = new_generator(seed)
        logits = torch.randn(100, generator=torch.Generator().manual_seed(7))
        return [sample_token(logits, 0.9, 40, 0.95, gen)[0] for _ in range(n)]

    def test_same_seed_same_tokens(self):
        assert self._draws(123) == self._draws(123)

    def test_different_seeds_differ(self):
        assert self._draws(1) != self._draws(2)

    def test_global_rng_not_consumed(self):
        """Sampling with a private generator leaves torch's global RNG alone."""
        torch.manual_seed(0)
        expected = torch.rand(1)
        torch.manual_seed(0)
        self._draws(5, n=5)
        assert torch.equal(torch.rand(1), expected)


class TestLogProb:
    def test_greedy_log_prob(self):
        logits = torch.tensor([1.0, 2.0, 3.0])
        token, log_prob = sample_token(logits, 0.0, 0, 1.0)
        expected = float(torch.log_softmax(logits, dim=-1)[2])
        assert token == 2
        assert abs(log_prob - expected) < 1e-6

    def test_filtering_does_not_change_score(self):
        """With top_k=1 the winner's score is still its full-softmax log-prob."""
        logits = torch.tensor([0.0, 0.0, 0.0, 0.0])
        _, log_prob = sample_token(logits, 1.0, 1, 1.0)
        assert abs(log_prob - math.log(0.25)) < 1e-6


class TestHelpers:
    def test_has_non_finite(self):
        assert not has_non_finite(torch.tensor([1.0, -2.0]))
        assert has_non_finite(torch.tensor([1.0, float("nan")]))
        assert has_non_finite(torch.tensor([float("-inf"), 0.0]))

    def test_perplexity(self):
        assert perplexity([]) == math.inf
        assert abs(perplexity([math.log(0.5)] * 4) - 2.0) < 1e-9

    def test_unseeded_generators_differ(self):
        a = torch.rand(4, generator=new_generator())
        b = torch.rand(4, generator=new_generator())
        assert not torch.equal(a, b)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
