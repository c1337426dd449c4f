"""
One-call generation helpers.

These wrap a single InferenceSession for scripts, notebooks and tests that
do not need an engine:

    result = generate(model, tokenizer, "Once upon a time",
                      InferenceOptions(max_new_tokens=50, seed=42))
    print(result.text)
    print(result.stats_string())

Budgets, determinism and failure reporting are exactly the session's: the
helpers never raise for governed failures, the status lives on the result.
"""

import logging
from typing import Iterator, List, Optional, Sequence, Union

from llama_rt.config import InferenceOptions
from llama_rt.model import Transformer
from llama_rt.pool import BufferPool
from llama_rt.session import GeneratedToken, GenerationResult, InferenceSession
from llama_rt.tokenizer import Tokenizer

logger = logging.getLogger(__name__)

Prompt = Union[str, Sequence[int]]


def generate(
    model: Transformer,
    tokenizer: Tokenizer,
    prompt: Prompt,
    options: Optional[InferenceOptions] = None,
    pool: Optional[BufferPool] = None,
) -> GenerationResult:
    """
    Generate a continuation of `prompt`.

    Args:
        model: Model in eval mode.
        tokenizer: Tokenizer matching the model's vocabulary.
        prompt: Text, or token ids taken as-is.
        options: Budgets and sampling. Defaults to InferenceOptions().
        pool: Scratch buffer pool; None allocates scratch per call.

    Returns:
        GenerationResult with the generated tokens, text and metrics.
    """
    if model.training or model.is_trainable:
        model.eval()
    with InferenceSession(model, tokenizer, options, pool=pool) as session:
        return session.generate(prompt)


def stream(
    model: Transformer,
    tokenizer: Tokenizer,
    prompt: Prompt,
    options: Optional[InferenceOptions] = None,
    pool: Optional[BufferPool] = None,
) -> Iterator[GeneratedToken]:
    """
    Stream tokens as they are produced.

    Raises ResourceLimitError / ValidationError on the first next() when the
    prompt is over budget.
    """
    if model.training or model.is_trainable:
        model.eval()
    session = InferenceSession(model, tokenizer, options, pool=pool)
    with session:
        yield from session.stream(prompt)


def generate_batch(
    model: Transformer,
    tokenizer: Tokenizer,
    prompts: List[Prompt],
    options: Optional[InferenceOptions] = None,
    pool: Optional[BufferPool] = None,
) -> List[GenerationResult]:
    """
    Generate for several prompts, one after another.

    Each prompt gets its own session. With a seed in `options`, every prompt
    starts from the same RNG state, so results do not depend on the order
    or number of prompts in the batch. For concurrent execution use
    InferenceEngine.submit.
    """
    results = []
    for i, prompt in enumerate(prompts):
        result = generate(model, tokenizer, prompt, options, pool)
        logger.debug("batch item %d: %s, %d tokens", i, result.status.value, len(result.token_ids))
        results.append(result)
    return results
