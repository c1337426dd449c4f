"""
Inference engine: many concurrent sessions over one shared model.

The engine holds one model (read-only after load, shared without locking),
one buffer pool and an admission gate sized to
EngineConfig.max_concurrent_sessions. Every request gets its own
InferenceSession (own KV cache, own RNG); all mutable generation state is
session-local.

ADMISSION:
  create_session()  non-blocking; a full engine raises ResourceLimitError
  generate()        waits up to `timeout` for a slot; a full engine returns
                    a RESOURCE_EXCEEDED result instead of raising
  stream()          like generate(), the slot is held while the iterator lives
  submit()          generate() on an internal thread pool, returns a Future

  A slot is released when its session is closed, whatever the outcome.

STATISTICS:
  Counters are updated under one lock when a session opens and closes.
  statistics() returns a consistent snapshot.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Union

from llama_rt import kernels
from llama_rt.config import EngineConfig, InferenceOptions
from llama_rt.errors import ResourceLimitError
from llama_rt.model import Transformer
from llama_rt.pool import BufferPool
from llama_rt.session import (
    GenerationMetrics,
    GenerationResult,
    InferenceSession,
    SessionStatus,
    StopReason,
    TokenStream,
)
from llama_rt.tokenizer import Tokenizer

logger = logging.getLogger(__name__)

Prompt = Union[str, Sequence[int]]


@dataclass(frozen=True)
class EngineStatistics:
    active_sessions: int
    max_sessions: int          # 0 = unbounded
    available_slots: int       # -1 = unbounded
    total_sessions: int
    completed: int
    failed: int
    total_tokens: int
    uptime_s: float
    tokens_per_second: float
    status_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "active_sessions": self.active_sessions,
            "max_sessions": self.max_sessions,
            "available_slots": self.available_slots,
            "total_sessions": self.total_sessions,
            "completed": self.completed,
            "failed": self.failed,
            "total_tokens": self.total_tokens,
            "uptime_s": self.uptime_s,
            "tokens_per_second": self.tokens_per_second,
            "status_counts": dict(self.status_counts),
        }


class InferenceEngine:
    """
    Bounded-concurrency front door for generation requests.

    USAGE:
      with InferenceEngine(model, tokenizer, EngineConfig(max_concurrent_sessions=2)) as engine:
          result = engine.generate("Once upon a time", InferenceOptions(seed=0))
          print(result.text)
          print(engine.statistics())
    """

    def __init__(
        self,
        model: Transformer,
        tokenizer: Tokenizer,
        config: Optional[EngineConfig] = None,
        pool: Optional[BufferPool] = None,
    ):
        self.config = config or EngineConfig()
        self.model = model.eval()
        self.tokenizer = tokenizer
        self.pool = pool if pool is not None else BufferPool()
        if self.config.num_threads > 0:
            kernels.set_num_threads(self.config.num_threads)

        n = self.config.max_concurrent_sessions
        self._slots = threading.BoundedSemaphore(n) if n > 0 else None
        self._lock = threading.Lock()
        self._active: Dict[str, InferenceSession] = {}
        self._total_sessions = 0
        self._total_tokens = 0
        self._status_counts: Dict[str, int] = {}
        self._started = time.monotonic()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._closed = False

        logger.info("engine ready: %d parameters, max_concurrent_sessions=%s, threads=%d",
                    model.num_parameters(), n or "unbounded", kernels.get_num_threads())

    # ── Admission ──────────────────────────────────────────────────────────

    def _acquire(self, blocking: bool, timeout: Optional[float] = None) -> bool:
        if self._closed:
            raise RuntimeError("engine is shut down")
        if self._slots is None:
            return True
        if not blocking:
            return self._slots.acquire(blocking=False)
        return self._slots.acquire(timeout=timeout)

    def _full_error(self) -> ResourceLimitError:
        n = self.config.max_concurrent_sessions
        return ResourceLimitError(
            "concurrent_sessions", n, n + 1,
            remediation="retry later or raise max_concurrent_sessions",
        )

    def _open(self, options: Optional[InferenceOptions]) -> InferenceSession:
        """Build and register a session. The caller already holds a slot."""
        with self._lock:
            self._total_sessions += 1
            session_id = f"{self._total_sessions:06d}"
        session = InferenceSession(self.model, self.tokenizer, options, pool=self.pool,
                                   session_id=session_id)
        session.add_close_callback(self._on_close)
        with self._lock:
            self._active[session_id] = session
        return session

    def _on_close(self, session: InferenceSession) -> None:
        with self._lock:
            if self._active.pop(session.session_id, None) is None:
                return
            key = session.status.value
            self._status_counts[key] = self._status_counts.get(key, 0) + 1
            self._total_tokens += len(session.result().token_ids)
        if self._slots is not None:
            self._slots.release()

    def create_session(
        self,
        options: Optional[InferenceOptions] = None,
        prompt: Optional[Prompt] = None,
    ) -> InferenceSession:
        """
        Reserve a slot and return a new session, prepared when `prompt` is given.

        The slot is released by session.close() (or leaving its `with` block).

        Raises:
            ResourceLimitError: no free slot, or the prompt is over budget.
            ValidationError: the prompt cannot be encoded.
        """
        if not self._acquire(blocking=False):
            raise self._full_error()
        session = self._open(options)
        if prompt is not None:
            try:
                session.prepare(prompt)
            except BaseException:
                session.close()
                raise
        return session

    # ── Requests ───────────────────────────────────────────────────────────

    def generate(
        self,
        prompt: Prompt,
        options: Optional[InferenceOptions] = None,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """
        Run one request to completion.

        Args:
            prompt: Text or token ids.
            options: Per-request budgets and sampling.
            timeout: Seconds to wait for a free slot (None = wait forever).

        Returns:
            The session's result. Never raises for governed failures,
            including a full engine (status RESOURCE_EXCEEDED).
        """
        if not self._acquire(blocking=True, timeout=timeout):
            logger.warning("no free session slot within %s s", timeout)
            return GenerationResult(
                status=SessionStatus.RESOURCE_EXCEEDED,
                stop_reason=StopReason.ERROR,
                token_ids=[],
                text="",
                metrics=GenerationMetrics(),
                error=self._full_error(),
            )
        session = self._open(options)
        try:
            return session.generate(prompt)
        finally:
            session.close()

    def stream(
        self,
        prompt: Prompt,
        options: Optional[InferenceOptions] = None,
        timeout: Optional[float] = None,
    ) -> TokenStream:
        """
        Start a streamed request. The slot is held until the stream is
        exhausted, closed or garbage collected, even if it is never read.

        Raises:
            ResourceLimitError: no slot within `timeout`, or prompt over budget.
        """
        if not self._acquire(blocking=True, timeout=timeout):
            raise self._full_error()
        session = self._open(options)
        try:
            tokens = session.stream(prompt)
        except BaseException:
            session.close()
            raise
        tokens.add_close_callback(session.close)
        return tokens

    def submit(
        self,
        prompt: Prompt,
        options: Optional[InferenceOptions] = None,
        timeout: Optional[float] = None,
    ) -> "Future[GenerationResult]":
        """generate() on the engine's worker pool."""
        if self._closed:
            raise RuntimeError("engine is shut down")
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.worker_count, thread_name_prefix="llama-rt"
                )
            executor = self._executor
        return executor.submit(self.generate, prompt, options, timeout)

    # ── Control ────────────────────────────────────────────────────────────

    def cancel_all(self) -> int:
        """Cancel every active session. Returns how many were signalled."""
        with self._lock:
            sessions = list(self._active.values())
        for session in sessions:
            session.cancel()
        if sessions:
            logger.info("cancelled %d active sessions", len(sessions))
        return len(sessions)

    def statistics(self) -> EngineStatistics:
        with self._lock:
            uptime = time.monotonic() - self._started
            n = self.config.max_concurrent_sessions
            active = len(self._active)
            counts = dict(self._status_counts)
            return EngineStatistics(
                active_sessions=active,
                max_sessions=n,
                available_slots=n - active if n > 0 else -1,
                total_sessions=self._total_sessions,
                completed=counts.get(SessionStatus.COMPLETED.value, 0),
                failed=counts.get(SessionStatus.FAILED.value, 0),
                total_tokens=self._total_tokens,
                uptime_s=uptime,
                tokens_per_second=self._total_tokens / uptime if uptime > 0 else 0.0,
                status_counts=counts,
            )

    def shutdown(self, wait: bool = True, cancel: bool = False) -> None:
        """Stop accepting requests; optionally cancel the running ones."""
        if self._closed:
            return
        if cancel:
            self.cancel_all()
        if self._executor is not None:
            self._executor.shutdown(wait=wait, cancel_futures=cancel)
        self._closed = True
        stats = self.statistics()
        logger.info("engine shut down: %d sessions, %d tokens, %.1f tok/s",
                    stats.total_sessions, stats.total_tokens, stats.tokens_per_second)

    def __enter__(self) -> "InferenceEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
