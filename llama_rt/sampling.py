"""
Next-token sampling.

The model outputs logits (raw scores) for each vocabulary token. How those
logits become one token id is the sampling strategy.

  1. TEMPERATURE: logits / temperature
     - temperature < 1.0: sharper distribution, more deterministic
     - temperature > 1.0: flatter distribution, more random
     - temperature = 0: greedy decoding (argmax)

  2. TOP-K: keep only the k highest logits, the rest become -inf.
     top_k = 1 is greedy as well.

  3. TOP-P (nucleus): keep the smallest set of tokens whose cumulative
     probability reaches p, then renormalize.

  Applied in order: temperature → top-k → softmax → top-p → sample

DETERMINISM:
  Every random draw goes through a caller-owned torch.Generator, never the
  global RNG. Two sessions with the same seed draw the same sequence no
  matter what other sessions (or the rest of the process) do with
  torch.manual_seed. Sampling always runs on CPU in float32, so the draws do
  not depend on the device the model ran on.
"""

import math
from typing import Optional, Tuple

import torch
import torch.nn.functional as F


def new_generator(seed: Optional[int] = None) -> torch.Generator:
    """
    A private CPU generator.

    With a seed, draws are reproducible. Without one the generator is seeded
    from OS entropy, so unseeded sessions do not repeat each other.
    """
    gen = torch.Generator(device="cpu")
    if seed is None:
        gen.seed()
    else:
        gen.manual_seed(seed)
    return gen


def has_non_finite(logits: torch.Tensor) -> bool:
    """True if any logit is NaN or ±Inf."""
    return not bool(torch.isfinite(logits).all())


def sample_top_p(probs: torch.Tensor, p: float, generator: Optional[torch.Generator] = None) -> int:
    """
    Top-p (nucleus) sampling: keep tokens whose cumulative probability ≥ p.

    HOW IT WORKS:
      1. Sort tokens by probability (descending)
      2. Compute cumulative sum of probabilities
      3. Drop every token whose PRECEDING cumulative mass already exceeds p
         (the token that crosses p is kept)
      4. Renormalize and sample from what is left

    EXAMPLE:
      probs  = [0.4, 0.3, 0.15, 0.1, 0.05]  (sorted descending)
      cumsum = [0.4, 0.7, 0.85, 0.95, 1.0]
      p = 0.9 → kept = [0.4, 0.3, 0.15, 0.1] → renormalized

    Args:
        probs: Probability distribution of shape (vocab_size,).
        p: Cumulative probability threshold in [0, 1].
        generator: Source of randomness.

    Returns:
        The sampled token id.
    """
    probs_sorted, sorted_indices = torch.sort(probs, descending=True)
    cumsum = torch.cumsum(probs_sorted, dim=-1)

    mask = cumsum - probs_sorted > p
    probs_sorted[mask] = 0.0
    probs_sorted /= probs_sorted.sum()

    sampled_idx = torch.multinomial(probs_sorted, num_samples=1, generator=generator)
    return int(sorted_indices[sampled_idx])


def sample_token(
    logits: torch.Tensor,
    temperature: float,
    top_k: int,
    top_p: float,
    generator: Optional[torch.Generator] = None,
) -> Tuple[int, float]:
    """
    Pick one token from a row of logits.

    Args:
        logits: Scores of shape (vocab_size,) or (1, vocab_size).
        temperature: 0 = greedy.
        top_k: Number of top tokens to keep (0 = disabled, 1 = greedy).
        top_p: Cumulative probability threshold (1.0 = disabled).
        generator: Seeded torch.Generator owned by the caller.

    Returns:
        (token_id, log_prob), where log_prob is the log-probability of the
        chosen token under the unfiltered, temperature-1 distribution.
        Filtering changes which token is picked, never how it is scored.
    """
    logits = logits.detach().reshape(-1).to("cpu", torch.float32)
    log_probs = F.log_softmax(logits, dim=-1)

    if temperature == 0.0 or top_k == 1:
        token = int(logits.argmax())
        return token, float(log_probs[token])

    logits = logits / temperature

    if top_k > 0:
        top_k = min(top_k, logits.size(-1))
        kth_value = torch.topk(logits, top_k).values[-1]
        logits[logits < kth_value] = float("-inf")

    probs = F.softmax(logits, dim=-1)

    if top_p < 1.0:
        token = sample_top_p(probs, top_p, generator)
    else:
        token = int(torch.multinomial(probs, num_samples=1, generator=generator))
    return token, float(log_probs[token])


def perplexity(log_probs) -> float:
    """exp of the mean negative log-probability; inf for an empty sequence."""
    log_probs = list(log_probs)
    if not log_probs:
        return math.inf
    return math.exp(-sum(log_probs) / len(log_probs))
