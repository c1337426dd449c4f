"""
Unit tests for the governed inference session.

The models here are tiny and randomly initialised; subclasses override
forward() to script slow steps, NaN logits or a forced EOS.

Tests verify:
  1. Same seed, same options → identical tokens
  2. Over-budget prompts fail before any forward pass runs
  3. Truncation keeps the first max_input_tokens tokens
  4. Timeouts and cancellation keep the tokens produced so far
  5. NaN logits fail the session at the exact step, with no token emitted
  6. Stop reasons: EOS, max_new_tokens, context full
  7. Steady-state decoding makes no new pool allocations
"""

import sys
import os
import gc
import math
import time

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_rt.config import InferenceOptions, ModelConfig
from llama_rt.errors import (
    CancelledError,
    InferenceTimeoutError,
    NumericAnomalyError,
    ResourceLimitError,
    ValidationError,
)
from llama_rt.model import Transformer
from llama_rt.pool import BufferPool
from llama_rt.session import InferenceSession, SessionStatus, StopReason
from llama_rt.tokenizer import ByteTokenizer

PROMPT = "abcdefgh"  # 8 bytes + BOS = 9 tokens


def tiny_config():
    return ModelConfig(
        vocab_size=259,
        dim=64,
        n_layers=2,
        n_heads=4,
        n_kv_heads=2,
        hidden_dim=128,
        max_seq_len=32,
    )


class CountingModel(Transformer):
    """Counts forward calls."""

    def __init__(self, config):
        super().__init__(config)
        self.calls = 0

    def forward(self, tokens, *args, **kwargs):
        self.calls += 1
        return super().forward(tokens, *args, **kwargs)


class SlowDecodeModel(CountingModel):
    """Sleeps on every single-token (decode) forward."""

    def __init__(self, config, delay_s):
        super().__init__(config)
        self.delay_s = delay_s

    def forward(self, tokens, *args, **kwargs):
        if tokens.shape[1] == 1:
            time.sleep(self.delay_s)
        return super().forward(tokens, *args, **kwargs)


class NaNModel(CountingModel):
    """Returns NaN logits from call number `good_calls + 1` on."""

    def __init__(self, config, good_calls):
        super().__init__(config)
        self.good_calls = good_calls

    def forward(self, tokens, *args, **kwargs):
        logits, loss = super().forward(tokens, *args, **kwargs)
        if self.calls > self.good_calls:
            logits = torch.full_like(logits, float("nan"))
        return logits, loss


class EOSModel(CountingModel):
    """Forces EOS to be the argmax from call number `good_calls + 1` on."""

    def __init__(self, config, good_calls):
        super().__init__(config)
        self.good_calls = good_calls

    def forward(self, tokens, *args, **kwargs):
        logits, loss = super().forward(tokens, *args, **kwargs)
        if self.calls > self.good_calls:
            logits = logits.clone()
            logits[..., self.config.eos_id] = 1e4
        return logits, loss


@pytest.fixture
def tokenizer():
    return ByteTokenizer()


@pytest.fixture
def model():
    torch.manual_seed(0)
    return CountingModel(tiny_config()).eval()


def greedy(**overrides):
    opts = dict(temperature=0.0, stop_on_eos=False, max_new_tokens=7)
    opts.update(overrides)
    return InferenceOptions(**opts)


class TestDeterminism:
    def test_same_seed_same_tokens(self, model, tokenizer):
        opts = InferenceOptions(seed=7, temperature=0.9, top_k=40, top_p=0.95,
                                max_new_tokens=10, stop_on_eos=False)
        a = InferenceSession(model, tokenizer, opts).generate(PROMPT)
        b = InferenceSession(model, tokenizer, opts).generate(PROMPT)
        assert a.ok and b.ok
        assert a.token_ids == b.token_ids
        assert a.text == b.text

    def test_different_seed_differs(self, model, tokenizer):
        opts = InferenceOptions(seed=1, temperature=1.0, top_k=0, top_p=1.0,
                                max_new_tokens=10, stop_on_eos=False)
        a = InferenceSession(model, tokenizer, opts).generate(PROMPT)
        b = InferenceSession(model, tokenizer, opts.with_overrides(seed=2)).generate(PROMPT)
        assert a.token_ids != b.token_ids

    def test_greedy_matches_full_forward(self, model, tokenizer):
        """Cached greedy decoding picks the argmax of an uncached forward over the whole sequence."""
        session = InferenceSession(model, tokenizer, greedy(max_new_tokens=5))
        result = session.generate(PROMPT)
        seq = session.prompt_ids + result.token_ids
        with torch.inference_mode():
            logits, _ = model(torch.tensor([seq]))
        n = len(session.prompt_ids)
        expected = logits[0, n - 1:-1].argmax(dim=-1).tolist()
        assert result.token_ids == expected

    def test_pool_does_not_change_output(self, model, tokenizer):
        plain = InferenceSession(model, tokenizer, greedy()).generate(PROMPT)
        pooled = InferenceSession(model, tokenizer, greedy(), pool=BufferPool()).generate(PROMPT)
        assert plain.token_ids == pooled.token_ids


class TestPrompt:
    def test_bos_prepended(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy())
        ids = session.prepare(PROMPT)
        assert ids[0] == model.config.bos_id
        assert len(ids) == 9

    def test_token_ids_taken_as_is(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy())
        assert session.prepare([5, 6, 7]) == [5, 6, 7]

    def test_empty_prompt(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy())
        result = session.generate([])
        assert result.status is SessionStatus.FAILED
        assert isinstance(result.error, ValidationError)
        assert model.calls == 0

    def test_out_of_vocab_ids(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy())
        with pytest.raises(ValidationError):
            session.prepare([1, 999])

    def test_prepare_twice(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy())
        session.prepare(PROMPT)
        with pytest.raises(RuntimeError):
            session.prepare(PROMPT)

    def test_prompt_given_twice(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy())
        session.prepare(PROMPT)
        with pytest.raises(ValidationError):
            session.stream(PROMPT)


class TestResourceLimits:
    """Budgets are enforced before the first forward pass."""

    def test_input_limit_raises_on_prepare(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy(max_input_tokens=4))
        with pytest.raises(ResourceLimitError) as info:
            session.prepare(PROMPT)
        assert info.value.resource == "input_tokens"
        assert info.value.limit == 4
        assert info.value.actual == 9
        assert session.status is SessionStatus.RESOURCE_EXCEEDED
        assert model.calls == 0

    def test_input_limit_result(self, model, tokenizer):
        result = InferenceSession(model, tokenizer, greedy(max_input_tokens=4)).generate(PROMPT)
        assert result.status is SessionStatus.RESOURCE_EXCEEDED
        assert result.stop_reason is StopReason.ERROR
        assert result.token_ids == []
        assert result.to_dict()["error"]["code"] == "resource_limit"
        assert model.calls == 0

    def test_truncation_keeps_first_tokens(self, model, tokenizer):
        session = InferenceSession(model, tokenizer,
                                   greedy(max_input_tokens=4, truncate_input=True))
        full = [model.config.bos_id] + tokenizer.encode(PROMPT, bos=False, eos=False)
        ids = session.prepare(PROMPT)
        assert ids == full[:4]
        assert session.metrics.truncated_tokens == 5
        assert session.metrics.prompt_tokens == 4

        result = session.generate()
        assert result.ok
        assert result.metrics.truncated_tokens == 5

    def test_context_limit(self, model, tokenizer):
        opts = greedy(max_input_tokens=0, max_context_tokens=8)
        session = InferenceSession(model, tokenizer, opts)
        assert session.context_capacity == 8
        with pytest.raises(ResourceLimitError) as info:
            session.prepare(PROMPT)
        assert info.value.resource == "context_tokens"
        assert model.calls == 0

    def test_context_truncation_leaves_room(self, model, tokenizer):
        """Truncating against the context keeps one position free for output."""
        opts = greedy(max_input_tokens=0, max_context_tokens=8, truncate_input=True)
        result = InferenceSession(model, tokenizer, opts).generate(PROMPT)
        assert result.metrics.prompt_tokens == 7
        assert len(result.token_ids) == 1
        assert result.stop_reason is StopReason.MAX_CONTEXT

    def test_context_capped_by_model(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy(max_context_tokens=4096))
        assert session.context_capacity == model.config.max_seq_len


class TestStopReasons:
    def test_max_new_tokens(self, model, tokenizer):
        result = InferenceSession(model, tokenizer, greedy(max_new_tokens=5)).generate(PROMPT)
        assert result.status is SessionStatus.COMPLETED
        assert result.stop_reason is StopReason.MAX_NEW_TOKENS
        assert len(result.token_ids) == 5
        # prefill + one decode forward per token after the first
        assert model.calls == 5

    def test_max_context(self, model, tokenizer):
        result = InferenceSession(model, tokenizer, greedy(max_new_tokens=100)).generate(PROMPT)
        assert result.stop_reason is StopReason.MAX_CONTEXT
        assert result.metrics.prompt_tokens + len(result.token_ids) == model.config.max_seq_len

    def test_eos(self, tokenizer):
        torch.manual_seed(0)
        model = EOSModel(tiny_config(), good_calls=3).eval()
        result = InferenceSession(model, tokenizer, greedy(stop_on_eos=True, max_new_tokens=20)) \
            .generate(PROMPT)
        assert result.stop_reason is StopReason.EOS
        assert len(result.token_ids) == 4
        assert result.token_ids[-1] == model.config.eos_id
        assert result.ok

    def test_eos_ignored_when_disabled(self, tokenizer):
        torch.manual_seed(0)
        model = EOSModel(tiny_config(), good_calls=0).eval()
        result = InferenceSession(model, tokenizer, greedy(max_new_tokens=3)).generate(PROMPT)
        assert result.stop_reason is StopReason.MAX_NEW_TOKENS
        assert result.token_ids == [model.config.eos_id] * 3


class TestTimeout:
    def test_timeout_keeps_partial_output(self, tokenizer):
        torch.manual_seed(0)
        model = SlowDecodeModel(tiny_config(), delay_s=0.1).eval()
        opts = greedy(max_new_tokens=20, max_time_ms=300)
        result = InferenceSession(model, tokenizer, opts).generate(PROMPT)
        assert result.status is SessionStatus.TIMED_OUT
        assert result.stop_reason is StopReason.TIMEOUT
        assert isinstance(result.error, InferenceTimeoutError)
        assert result.error.limit_ms == 300
        assert 1 <= len(result.token_ids) < 20
        assert result.partial
        assert result.metrics.generated_tokens == len(result.token_ids)

    def test_raise_for_status(self, tokenizer):
        torch.manual_seed(0)
        model = SlowDecodeModel(tiny_config(), delay_s=0.1).eval()
        result = InferenceSession(model, tokenizer, greedy(max_new_tokens=20, max_time_ms=150)) \
            .generate(PROMPT)
        with pytest.raises(InferenceTimeoutError):
            result.raise_for_status()

    def test_no_limit(self, model, tokenizer):
        result = InferenceSession(model, tokenizer, greedy(max_time_ms=0)).generate(PROMPT)
        assert result.ok


class TestNumericGuard:
    def test_nan_at_prefill(self, tokenizer):
        torch.manual_seed(0)
        model = NaNModel(tiny_config(), good_calls=0).eval()
        result = InferenceSession(model, tokenizer, greedy()).generate(PROMPT)
        assert result.status is SessionStatus.FAILED
        assert isinstance(result.error, NumericAnomalyError)
        assert result.error.step == 0
        assert result.token_ids == []
        assert not result.partial

    def test_nan_mid_generation(self, tokenizer):
        torch.manual_seed(0)
        model = NaNModel(tiny_config(), good_calls=3).eval()
        result = InferenceSession(model, tokenizer, greedy(max_new_tokens=10)).generate(PROMPT)
        assert result.status is SessionStatus.FAILED
        assert result.error.step == 3
        assert len(result.token_ids) == 3
        assert result.partial
        assert result.to_dict()["error"] == {
            "code": "numeric_anomaly",
            "message": str(result.error),
            "step": 3,
        }


class TestCancellation:
    def test_cancel_before_start(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy())
        session.cancel()
        result = session.generate(PROMPT)
        assert result.status is SessionStatus.CANCELLED
        assert isinstance(result.error, CancelledError)
        assert result.token_ids == []

    def test_cancel_mid_stream(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy(max_new_tokens=20))
        seen = []
        for tok in session.stream(PROMPT):
            seen.append(tok.token_id)
            if len(seen) == 2:
                session.cancel()
        result = session.result()
        assert result.status is SessionStatus.CANCELLED
        assert result.stop_reason is StopReason.CANCELLED
        assert result.token_ids == seen
        assert len(seen) == 2

    def test_stream_closed_early(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy(max_new_tokens=20))
        tokens = session.stream(PROMPT)
        next(tokens)
        tokens.close()
        assert session.status is SessionStatus.CANCELLED
        assert len(session.result().token_ids) == 1

    def test_stream_closed_before_first_token(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy(max_new_tokens=20))
        session.stream(PROMPT).close()
        result = session.result()
        assert session.status.is_terminal
        assert result.status is SessionStatus.CANCELLED
        assert result.stop_reason is StopReason.CANCELLED
        assert isinstance(result.error, CancelledError)
        assert result.token_ids == []

    def test_stream_dropped_unread(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy(max_new_tokens=20))
        tokens = session.stream(PROMPT)
        del tokens
        gc.collect()
        assert session.status is SessionStatus.CANCELLED

    def test_stream_closed_after_last_token(self, model, tokenizer):
        """The stop reason is already known when the last token is yielded."""
        session = InferenceSession(model, tokenizer, greedy(max_new_tokens=1))
        tokens = session.stream(PROMPT)
        next(tokens)
        tokens.close()
        assert session.status is SessionStatus.COMPLETED
        assert session.result().stop_reason is StopReason.MAX_NEW_TOKENS

    def test_close_cancels_and_runs_callbacks(self, model, tokenizer):
        closed = []
        session = InferenceSession(model, tokenizer, greedy())
        session.add_close_callback(closed.append)
        with session:
            session.prepare(PROMPT)
        assert session.cancelled
        assert closed == [session]
        session.close()
        assert closed == [session]


class TestStreaming:
    def test_stream_once(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy())
        list(session.stream(PROMPT))
        with pytest.raises(RuntimeError):
            session.stream()

    def test_stream_items(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy(max_new_tokens=5))
        items = list(session.stream(PROMPT))
        result = session.result()
        assert [t.index for t in items] == list(range(5))
        assert [t.token_id for t in items] == result.token_ids
        assert result.text == tokenizer.decode(result.token_ids)
        assert [t.metrics.generated_tokens for t in items] == [1, 2, 3, 4, 5]

    def test_stream_without_prompt(self, model, tokenizer):
        with pytest.raises(ValidationError):
            InferenceSession(model, tokenizer, greedy()).stream()


class TestMetrics:
    def test_counters(self, model, tokenizer):
        result = InferenceSession(model, tokenizer, greedy(max_new_tokens=6)).generate(PROMPT)
        m = result.metrics
        assert m.prompt_tokens == 9
        assert m.generated_tokens == 6
        assert len(m.token_latencies_ms) == 6
        assert m.token_latencies_ms[0] == pytest.approx(m.ttft_ms)
        assert 0 < m.prefill_ms <= m.ttft_ms <= m.total_ms
        assert m.tokens_per_second > 0

    def test_log_probs(self, model, tokenizer):
        result = InferenceSession(model, tokenizer, greedy(max_new_tokens=4)).generate(PROMPT)
        assert len(result.log_probs) == 4
        assert all(lp <= 0 for lp in result.log_probs)
        assert math.isfinite(result.perplexity)

    def test_result_to_dict(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy(max_new_tokens=3), session_id="abc")
        d = session.generate(PROMPT).to_dict()
        assert d["session_id"] == "abc"
        assert d["status"] == "completed"
        assert d["stop_reason"] == "max_new_tokens"
        assert len(d["token_ids"]) == 3
        assert d["metrics"]["generated_tokens"] == 3
        assert d["error"] is None

    def test_metrics_snapshot_is_independent(self, model, tokenizer):
        session = InferenceSession(model, tokenizer, greedy(max_new_tokens=3))
        tokens = session.stream(PROMPT)
        first = next(tokens).metrics
        list(tokens)
        assert session.result().metrics.generated_tokens == 3
        assert first.generated_tokens == 1
        assert len(first.token_latencies_ms) == 1

    def test_stats_string(self, model, tokenizer):
        result = InferenceSession(model, tokenizer, greedy(max_new_tokens=2)).generate(PROMPT)
        text = result.stats_string()
        assert "completed" in text
        assert "Output tokens  : 2" in text


class TestPoolBudget:
    def test_no_allocations_after_first_decode_step(self, model, tokenizer):
        pool = BufferPool()
        session = InferenceSession(model, tokenizer, greedy(max_new_tokens=7), pool=pool)
        baseline = None
        for tok in session.stream(PROMPT):
            if tok.index == 1:
                baseline = pool.stats().allocations
        assert session.result().ok
        assert baseline is not None and baseline > 0
        assert pool.stats().allocations == baseline

    def test_buffers_returned(self, model, tokenizer):
        pool = BufferPool()
        InferenceSession(model, tokenizer, greedy(), pool=pool).generate(PROMPT)
        stats = pool.stats()
        assert stats.rents == stats.returns
        assert stats.hits > 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
