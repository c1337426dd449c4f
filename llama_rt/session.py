"""
Inference session: one governed generation request.

A session binds one model (shared, read-only), one KV cache (its own), one
InferenceOptions and one seeded torch.Generator, and runs the autoregressive
decode loop under the options' budgets.

TWO-PHASE GENERATION:

  PREFILL PHASE (processing the prompt):
    The entire prompt is fed through the model in one forward pass. This
    populates the KV cache with all prompt positions and yields logits for
    the last prompt token, which pick the first generated token.

  DECODE PHASE (generating new tokens):
    Each new token is fed through the model alone; the KV cache provides
    the context. One forward pass per generated token.

    Step 1: model("time", cache=[K,V for "Once upon a"]) → sample ","
    Step 2: model(",",    cache=[K,V for "Once upon a time"]) → sample "there"
    ...until EOS, max_new_tokens, the context limit, a timeout or a cancel

STATE MACHINE:

  CREATED → VALIDATING → GENERATING → COMPLETED
                │             ├──────→ TIMED_OUT
                │             ├──────→ CANCELLED
                │             └──────→ FAILED
                └─────────────────────→ RESOURCE_EXCEEDED / FAILED

STEP BOUNDARY (checked in this order before each token is emitted):
  1. cancel_event set           → CANCELLED
  2. elapsed > max_time_ms      → TIMED_OUT
  3. NaN/Inf in the logits row  → FAILED (NumericAnomalyError), no token
  4. sample, emit
  5. EOS / max_new_tokens / context full → COMPLETED

Tokens produced before a timeout, cancellation or failure are kept on the
result. Errors after prepare() are recorded on the session, not raised to
the stream consumer; GenerationResult.raise_for_status() re-raises them.
"""

import copy
import enum
import logging
import threading
import time
import uuid
import weakref
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Sequence, Union

import torch

from llama_rt.config import InferenceOptions
from llama_rt.errors import (
    CancelledError,
    InferenceTimeoutError,
    LlamaRuntimeError,
    NumericAnomalyError,
    ResourceLimitError,
    ValidationError,
)
from llama_rt.model import Transformer
from llama_rt.pool import BufferPool
from llama_rt.sampling import has_non_finite, new_generator, perplexity, sample_token
from llama_rt.tokenizer import Tokenizer

logger = logging.getLogger(__name__)


class SessionStatus(enum.Enum):
    CREATED = "created"
    VALIDATING = "validating"
    GENERATING = "generating"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    RESOURCE_EXCEEDED = "resource_exceeded"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.TIMED_OUT,
    SessionStatus.RESOURCE_EXCEEDED,
    SessionStatus.CANCELLED,
    SessionStatus.FAILED,
})


class StopReason(enum.Enum):
    MAX_NEW_TOKENS = "max_new_tokens"
    EOS = "eos"
    MAX_CONTEXT = "max_context"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class GenerationMetrics:
    """
    Running counters for one session, updated after every emitted token.

    ttft_ms is measured from the start of the stream (prefill included) to
    the first emitted token. token_latencies_ms[i] is the time between token
    i-1 and token i (token 0's entry equals ttft_ms).
    """

    prompt_tokens: int = 0
    generated_tokens: int = 0
    truncated_tokens: int = 0
    prefill_ms: float = 0.0
    ttft_ms: float = 0.0
    total_ms: float = 0.0
    token_latencies_ms: List[float] = field(default_factory=list)

    @property
    def decode_ms(self) -> float:
        return max(self.total_ms - self.prefill_ms, 0.0)

    @property
    def mean_token_latency_ms(self) -> float:
        if not self.token_latencies_ms:
            return 0.0
        return sum(self.token_latencies_ms) / len(self.token_latencies_ms)

    @property
    def tokens_per_second(self) -> float:
        """Overall throughput including prefill."""
        if self.total_ms <= 0:
            return 0.0
        return self.generated_tokens / (self.total_ms / 1000)

    @property
    def decode_tokens_per_second(self) -> float:
        """Decode throughput, excluding prefill."""
        if self.decode_ms <= 0:
            return 0.0
        return self.generated_tokens / (self.decode_ms / 1000)

    def snapshot(self) -> "GenerationMetrics":
        """Independent copy; later updates to the session do not show through."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "generated_tokens": self.generated_tokens,
            "truncated_tokens": self.truncated_tokens,
            "prefill_ms": self.prefill_ms,
            "ttft_ms": self.ttft_ms,
            "total_ms": self.total_ms,
            "mean_token_latency_ms": self.mean_token_latency_ms,
            "tokens_per_second": self.tokens_per_second,
        }


@dataclass(frozen=True)
class GeneratedToken:
    """One stream item. `text` is the newly decoded text for this token."""

    token_id: int
    text: str
    index: int
    log_prob: float
    metrics: GenerationMetrics


@dataclass
class GenerationResult:
    """Outcome of a session: tokens produced plus how and why it stopped."""

    status: SessionStatus
    stop_reason: Optional[StopReason]
    token_ids: List[int]
    text: str
    metrics: GenerationMetrics
    error: Optional[BaseException] = None
    session_id: str = ""
    log_probs: List[float] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is SessionStatus.COMPLETED

    @property
    def partial(self) -> bool:
        """Stopped by a timeout, cancel or failure but produced some tokens."""
        return not self.ok and bool(self.token_ids)

    @property
    def perplexity(self) -> float:
        return perplexity(self.log_probs)

    def raise_for_status(self) -> "GenerationResult":
        if self.error is not None:
            raise self.error
        return self

    def stats_string(self) -> str:
        """Formatted summary of inference metrics."""
        m = self.metrics
        reason = self.stop_reason.value if self.stop_reason else "-"
        lines = [
            f"Status         : {self.status.value} ({reason})",
            f"Prompt tokens  : {m.prompt_tokens}",
            f"Output tokens  : {m.generated_tokens}",
            f"TTFT           : {m.ttft_ms:.1f} ms",
            f"Decode speed   : {m.decode_tokens_per_second:.1f} tok/s",
            f"Overall speed  : {m.tokens_per_second:.1f} tok/s",
            f"Total time     : {m.total_ms:.1f} ms",
        ]
        if m.truncated_tokens:
            lines.append(f"Truncated      : {m.truncated_tokens} prompt tokens")
        if self.error is not None:
            lines.append(f"Error          : {self.error}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        error = None
        if isinstance(self.error, LlamaRuntimeError):
            error = self.error.to_dict()
        elif self.error is not None:
            error = {"code": "internal", "message": str(self.error)}
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "token_ids": list(self.token_ids),
            "text": self.text,
            "metrics": self.metrics.to_dict(),
            "error": error,
        }


_ERROR_STATUS = (
    (InferenceTimeoutError, SessionStatus.TIMED_OUT, StopReason.TIMEOUT),
    (CancelledError, SessionStatus.CANCELLED, StopReason.CANCELLED),
    (ResourceLimitError, SessionStatus.RESOURCE_EXCEEDED, StopReason.ERROR),
)


def _finish_stream(session: "InferenceSession", tokens: Iterator["GeneratedToken"],
                   callbacks: List[Callable[[], None]]) -> None:
    # Must not reference the TokenStream itself: it runs from weakref.finalize.
    tokens.close()
    if not session.status.is_terminal:
        session._terminate(SessionStatus.CANCELLED, StopReason.CANCELLED,
                           CancelledError(f"session {session.session_id}: stream closed before it started"))
    for fn in callbacks:
        fn()


class TokenStream:
    """
    Single-pass iterator over a session's generated tokens.

    Closing the stream (close(), leaving its `with` block, or garbage
    collection) ends the decode loop, puts the session in a terminal state
    and runs the close callbacks exactly once, whether or not iteration
    ever started. Exhaustion and errors close it too.
    """

    def __init__(self, session: "InferenceSession", tokens: Iterator["GeneratedToken"]):
        self.session = session
        self._tokens = tokens
        self._callbacks: List[Callable[[], None]] = []
        self._finalizer = weakref.finalize(self, _finish_stream, session, tokens, self._callbacks)

    def add_close_callback(self, fn: Callable[[], None]) -> None:
        self._callbacks.append(fn)

    @property
    def closed(self) -> bool:
        return not self._finalizer.alive

    def __iter__(self) -> "TokenStream":
        return self

    def __next__(self) -> "GeneratedToken":
        try:
            return next(self._tokens)
        except BaseException:
            self.close()
            raise

    def close(self) -> None:
        self._finalizer()

    def __enter__(self) -> "TokenStream":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class InferenceSession:
    """
    One generation request over a shared model.

    USAGE:
      session = InferenceSession(model, tokenizer, InferenceOptions(seed=0))
      for tok in session.stream("Once upon a time"):
          print(tok.text, end="", flush=True)
      result = session.result()

    A session streams once. Build a new session to generate again.
    """

    def __init__(
        self,
        model: Transformer,
        tokenizer: Tokenizer,
        options: Optional[InferenceOptions] = None,
        pool: Optional[BufferPool] = None,
        session_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.model = model
        self.tokenizer = tokenizer
        self.options = options or InferenceOptions()
        self.pool = pool
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._cancel = cancel_event or threading.Event()
        self._generator = new_generator(self.options.seed)
        self._device = model.tok_embeddings.weight.device

        cfg = model.config
        ctx = self.options.max_context_tokens
        self.context_capacity = min(ctx, cfg.max_seq_len) if ctx > 0 else cfg.max_seq_len

        self._status = SessionStatus.CREATED
        self._stop_reason: Optional[StopReason] = None
        self._error: Optional[BaseException] = None
        self._metrics = GenerationMetrics()
        self._prompt_ids: Optional[List[int]] = None
        self._token_ids: List[int] = []
        self._log_probs: List[float] = []
        self._text = ""
        self._streamed = False
        self._closed = False
        self._close_callbacks: List[Callable[["InferenceSession"], None]] = []

    # ── Introspection ──────────────────────────────────────────────────────

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def metrics(self) -> GenerationMetrics:
        return self._metrics.snapshot()

    @property
    def prompt_ids(self) -> Optional[List[int]]:
        return None if self._prompt_ids is None else list(self._prompt_ids)

    def cancel(self) -> None:
        """Request cancellation; honoured at the next step boundary."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def result(self) -> GenerationResult:
        return GenerationResult(
            status=self._status,
            stop_reason=self._stop_reason,
            token_ids=list(self._token_ids),
            text=self._text,
            metrics=self._metrics.snapshot(),
            error=self._error,
            session_id=self.session_id,
            log_probs=list(self._log_probs),
        )

    # ── Validation ─────────────────────────────────────────────────────────

    def prepare(self, prompt: Union[str, Sequence[int]]) -> List[int]:
        """
        Encode the prompt and enforce the input and context budgets.

        Runs no forward pass. A string is encoded without special tokens and
        the model's BOS id is prepended when the model requires it; a token
        sequence is taken as-is.

        Raises:
            ResourceLimitError: prompt over max_input_tokens (with
                truncate_input off) or leaving no room in the context.
            ValidationError: empty prompt or ids outside the vocabulary.
        """
        if self._status is not SessionStatus.CREATED:
            raise RuntimeError(f"session {self.session_id} already prepared ({self._status.value})")
        self._status = SessionStatus.VALIDATING
        try:
            ids = self._encode(prompt)
            ids = self._enforce_limits(ids)
        except ResourceLimitError as exc:
            self._terminate(SessionStatus.RESOURCE_EXCEEDED, StopReason.ERROR, exc)
            raise
        except ValidationError as exc:
            self._terminate(SessionStatus.FAILED, StopReason.ERROR, exc)
            raise

        self._prompt_ids = ids
        self._metrics.prompt_tokens = len(ids)
        return list(ids)

    def _encode(self, prompt: Union[str, Sequence[int]]) -> List[int]:
        cfg = self.model.config
        if isinstance(prompt, str):
            ids = list(self.tokenizer.encode(prompt, bos=False, eos=False))
            if cfg.add_bos and (not ids or ids[0] != cfg.bos_id):
                ids.insert(0, cfg.bos_id)
        else:
            ids = [int(t) for t in prompt]
        if not ids:
            raise ValidationError("prompt encodes to zero tokens", field="prompt")
        bad = [t for t in ids if not 0 <= t < cfg.vocab_size]
        if bad:
            raise ValidationError(
                f"prompt has {len(bad)} token ids outside [0, {cfg.vocab_size}), e.g. {bad[0]}",
                field="prompt",
            )
        return ids

    def _enforce_limits(self, ids: List[int]) -> List[int]:
        opts = self.options
        n = len(ids)
        # At least one new position must remain for generated tokens.
        room = self.context_capacity - 1
        limit = min(opts.max_input_tokens, room) if opts.max_input_tokens > 0 else room

        if n > limit:
            if not opts.truncate_input:
                if opts.max_input_tokens > 0 and n > opts.max_input_tokens:
                    raise ResourceLimitError(
                        "input_tokens", opts.max_input_tokens, n,
                        remediation="set truncate_input=True or raise max_input_tokens",
                    )
                raise ResourceLimitError(
                    "context_tokens", self.context_capacity, n + 1,
                    remediation="shorten the prompt or raise max_context_tokens",
                )
            if limit <= 0:
                raise ResourceLimitError("context_tokens", self.context_capacity, n + 1)
            logger.warning("session %s: prompt truncated from %d to %d tokens",
                           self.session_id, n, limit)
            self._metrics.truncated_tokens = n - limit
            ids = ids[:limit]
        return ids

    # ── Generation ─────────────────────────────────────────────────────────

    def stream(self, prompt: Union[str, Sequence[int], None] = None) -> TokenStream:
        """
        Start generation and return a lazy, single-pass TokenStream.

        Validation happens here, before the first forward pass, so budget
        violations raise immediately. Everything after that is recorded on
        the session. Closing the stream early (break, .close(), garbage
        collection), even before the first token, cancels the session and
        releases its cache.
        """
        if self._streamed:
            raise RuntimeError(f"session {self.session_id} has already been streamed")
        if self._prompt_ids is None:
            if prompt is None:
                raise ValidationError("no prompt given and prepare() was not called", field="prompt")
            self.prepare(prompt)
        elif prompt is not None:
            raise ValidationError("prompt already set by prepare()", field="prompt")
        self._streamed = True
        return TokenStream(self, self._decode_loop())

    def generate(self, prompt: Union[str, Sequence[int], None] = None) -> GenerationResult:
        """
        Run to completion and return the result.

        Never raises for governed failures: budget violations, timeouts,
        cancellation and numeric anomalies all come back as a result with
        the matching status.
        """
        try:
            for _ in self.stream(prompt):
                pass
        except (ResourceLimitError, ValidationError) as exc:
            if not self._status.is_terminal:
                self._terminate(SessionStatus.FAILED, StopReason.ERROR, exc)
        return self.result()

    def _forward(self, ids: List[int], cache) -> torch.Tensor:
        tokens = torch.tensor([ids], dtype=torch.long, device=self._device)
        logits, _ = self.model(tokens, kv_cache=cache, pool=self.pool, last_only=True)
        return logits[0, -1]

    def _decode_loop(self) -> Iterator[GeneratedToken]:
        opts = self.options
        eos_id = self.model.config.eos_id
        self._status = SessionStatus.GENERATING
        logger.info("session %s: generating (prompt %d tokens, max_new %d)",
                    self.session_id, len(self._prompt_ids), opts.max_new_tokens)

        start = time.perf_counter()
        last = start
        cache = self.model.new_kv_cache(max_seq_len=self.context_capacity)
        stop: Optional[StopReason] = None
        try:
            with torch.inference_mode():
                logits = self._forward(self._prompt_ids, cache)
            self._metrics.prefill_ms = (time.perf_counter() - start) * 1000

            step = 0
            while True:
                if self._cancel.is_set():
                    raise CancelledError(f"session {self.session_id} cancelled at step {step}")
                elapsed_ms = (time.perf_counter() - start) * 1000
                if opts.max_time_ms and elapsed_ms > opts.max_time_ms:
                    raise InferenceTimeoutError(elapsed_ms, opts.max_time_ms)
                if has_non_finite(logits):
                    raise NumericAnomalyError(step)

                token, log_prob = sample_token(logits, opts.temperature, opts.top_k, opts.top_p,
                                               self._generator)
                now = time.perf_counter()
                self._record(token, log_prob, (now - last) * 1000, (now - start) * 1000)
                last = now

                if opts.stop_on_eos and token == eos_id:
                    stop = StopReason.EOS
                elif len(self._token_ids) >= opts.max_new_tokens:
                    stop = StopReason.MAX_NEW_TOKENS
                elif len(self._prompt_ids) + len(self._token_ids) >= self.context_capacity:
                    stop = StopReason.MAX_CONTEXT

                full = self.tokenizer.decode(self._token_ids)
                delta = full[len(self._text):] if full.startswith(self._text) else full
                self._text = full
                yield GeneratedToken(token, delta, step, log_prob, self._metrics.snapshot())

                if stop is not None:
                    break
                step += 1
                with torch.inference_mode():
                    logits = self._forward([token], cache)

            self._terminate(SessionStatus.COMPLETED, stop)
        except GeneratorExit:
            if stop is not None:
                self._terminate(SessionStatus.COMPLETED, stop)
            else:
                self._terminate(SessionStatus.CANCELLED, StopReason.CANCELLED,
                                CancelledError(f"session {self.session_id}: stream closed by consumer"))
            raise
        except LlamaRuntimeError as exc:
            for cls, status, reason in _ERROR_STATUS:
                if isinstance(exc, cls):
                    self._terminate(status, reason, exc)
                    break
            else:
                self._terminate(SessionStatus.FAILED, StopReason.ERROR, exc)
        except Exception as exc:
            logger.exception("session %s: unexpected failure", self.session_id)
            self._terminate(SessionStatus.FAILED, StopReason.ERROR, exc)
        finally:
            self._metrics.total_ms = (time.perf_counter() - start) * 1000
            cache.reset()
            del cache

    def _record(self, token: int, log_prob: float, latency_ms: float, elapsed_ms: float) -> None:
        m = self._metrics
        if not self._token_ids:
            m.ttft_ms = elapsed_ms
        self._token_ids.append(token)
        self._log_probs.append(log_prob)
        m.generated_tokens = len(self._token_ids)
        m.token_latencies_ms.append(latency_ms)
        m.total_ms = elapsed_ms

    def _terminate(self, status: SessionStatus, reason: Optional[StopReason],
                   error: Optional[BaseException] = None) -> None:
        self._status = status
        self._stop_reason = reason
        self._error = error
        m = self._metrics
        if status is SessionStatus.COMPLETED:
            logger.info("session %s: completed (%s), %d tokens in %.1f ms",
                        self.session_id, reason.value, m.generated_tokens, m.total_ms)
        else:
            logger.info("session %s: %s after %d tokens: %s",
                        self.session_id, status.value, m.generated_tokens, error)

    # ── Lifetime ───────────────────────────────────────────────────────────

    def add_close_callback(self, fn: Callable[["InferenceSession"], None]) -> None:
        """Run `fn(session)` once when the session is closed."""
        self._close_callbacks.append(fn)

    def close(self) -> None:
        """
        Release the session. Idempotent.

        A session that has not reached a terminal state is cancelled first.
        """
        if self._closed:
            return
        self._closed = True
        if not self._status.is_terminal:
            self._cancel.set()
        for fn in self._close_callbacks:
            fn(self)

    def __enter__(self) -> "InferenceSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return (f"InferenceSession(id={self.session_id}, status={self._status.value}, "
                f"tokens={len(self._token_ids)})")
