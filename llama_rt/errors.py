"""
Error taxonomy for the inference runtime.

Every failure the runtime can produce is one of the classes below. They all
derive from LlamaRuntimeError so a caller can catch the whole family with a
single except clause, and each carries a stable string `code` that survives
serialization (logs, JSON results, metrics labels).

WHERE ERRORS ARE RAISED VS RETURNED:
  Low-level layers (kernels, buffer pool, KV cache, file loaders) RAISE.
  They have no way to recover and no partial result worth keeping.

  The session and engine layers CATCH these at their boundary and turn them
  into a GenerationResult with a terminal status. A timeout after 12 tokens
  is not an exception for the caller: it is a result with 12 tokens and
  status TIMED_OUT. Call result.raise_for_status() to get exception-style
  control flow back.

  ┌──────────────────────┬──────────────────┬───────────────────────────┐
  │ Class                │ code             │ Typical origin            │
  ├──────────────────────┼──────────────────┼───────────────────────────┤
  │ ValidationError      │ validation       │ options / config / shapes │
  │ ShapeMismatchError   │ shape_mismatch   │ kernels                   │
  │ ResourceLimitError   │ resource_limit   │ session.prepare, engine   │
  │ InferenceTimeoutError│ timeout          │ decode loop               │
  │ CapacityError        │ capacity         │ KV cache                  │
  │ CancelledError       │ cancelled        │ decode loop               │
  │ NumericAnomalyError  │ numeric_anomaly  │ decode loop (NaN/Inf)     │
  │ FormatError          │ format           │ model file / checkpoint   │
  └──────────────────────┴──────────────────┴───────────────────────────┘
"""

from typing import Optional, Sequence


class LlamaRuntimeError(Exception):
    """Base class for all runtime errors."""

    code = "runtime"

    def to_dict(self) -> dict:
        """Machine-readable form used in GenerationResult.to_dict()."""
        return {"code": self.code, "message": str(self)}


class ValidationError(LlamaRuntimeError, ValueError):
    """Malformed configuration or argument. Never retried."""

    code = "validation"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["field"] = self.field
        return d


class ShapeMismatchError(LlamaRuntimeError, ValueError):
    """Kernel inputs have inconsistent dimensions."""

    code = "shape_mismatch"

    def __init__(
        self,
        op: str,
        expected: Sequence,
        actual: Sequence,
    ):
        super().__init__(
            f"{op}: shape mismatch, expected {tuple(expected)} got {tuple(actual)}"
        )
        self.op = op
        self.expected = tuple(expected)
        self.actual = tuple(actual)


class ResourceLimitError(LlamaRuntimeError):
    """
    A governed budget (input tokens, context, concurrent sessions) was exceeded.

    Recoverable at the caller's discretion: the remediation string says what
    to change, e.g. enable truncate_input or raise max_input_tokens.
    """

    code = "resource_limit"

    def __init__(
        self,
        resource: str,
        limit: int,
        actual: int,
        remediation: Optional[str] = None,
    ):
        msg = f"{resource} limit exceeded: {actual} > {limit}"
        if remediation:
            msg += f" ({remediation})"
        super().__init__(msg)
        self.resource = resource
        self.limit = limit
        self.actual = actual
        self.remediation = remediation

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(resource=self.resource, limit=self.limit, actual=self.actual)
        return d


class InferenceTimeoutError(LlamaRuntimeError):
    """Wall-clock budget ran out. Partial output lives on the result."""

    code = "timeout"

    def __init__(self, elapsed_ms: float, limit_ms: float):
        super().__init__(
            f"generation timed out after {elapsed_ms:.1f} ms (limit {limit_ms} ms)"
        )
        self.elapsed_ms = elapsed_ms
        self.limit_ms = limit_ms


class CapacityError(LlamaRuntimeError):
    """KV cache (or model context) cannot hold the requested positions."""

    code = "capacity"

    def __init__(self, message: str, capacity: int = 0, requested: int = 0):
        super().__init__(message)
        self.capacity = capacity
        self.requested = requested


class CancelledError(LlamaRuntimeError):
    """Generation was cancelled by the caller."""

    code = "cancelled"


class NumericAnomalyError(LlamaRuntimeError, ArithmeticError):
    """NaN or Inf found in logits. The offending step emits no token."""

    code = "numeric_anomaly"

    def __init__(self, step: int, detail: str = "non-finite logits"):
        super().__init__(f"{detail} at decode step {step}")
        self.step = step

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["step"] = self.step
        return d


class FormatError(LlamaRuntimeError):
    """Model file or checkpoint failed header or tensor validation."""

    code = "format"

    def __init__(self, message: str, path: Optional[str] = None):
        if path:
            message = f"{path}: {message}"
        super().__init__(message)
        self.path = path
