"""
Configuration for the model architecture, generation requests and the engine.

This module is the SINGLE SOURCE OF TRUTH for every tunable number in the
runtime. Three dataclasses live here:

  ModelConfig       Architecture hyperparameters. Travels inside every
                    checkpoint and quantized model file so that a model can
                    be rebuilt from the file alone.
  InferenceOptions  The resource-governance contract for ONE generation
                    request: token budgets, wall-clock budget, sampling
                    parameters, seed, truncate-vs-reject policy. Frozen and
                    validated at construction.
  EngineConfig      Process-wide settings for the InferenceEngine
                    (concurrency bound, intra-op thread count).

Validation never uses assert: a bad value raises ValidationError naming the
offending field, so it survives `python -O` and reaches API callers intact.

ARCHITECTURE SWITCHES:
  The default ModelConfig describes a LLaMA-style decoder:
  - Pre-normalization with RMSNorm
  - Rotary Positional Embeddings (RoPE)
  - SwiGLU activation in the FFN
  - Grouped Query Attention (GQA)
  - No bias terms

  GPT-style checkpoints are served by flipping three switches:
    norm_type="layernorm", ffn_type="gelu", position_encoding="learned"
"""

from dataclasses import dataclass, asdict, fields, replace
from typing import Optional
import json
import math
import os

from llama_rt.errors import ValidationError


NORM_TYPES = ("rmsnorm", "layernorm")
FFN_TYPES = ("swiglu", "gelu")
POSITION_ENCODINGS = ("rope", "learned")


@dataclass
class ModelConfig:
    """
    Architecture hyperparameters for the Transformer model.

    These define the model's structure. Changing any of them creates a model
    that cannot load weights from a differently-configured one. The loaders
    compare every tensor shape against the shapes implied by this config.

    PARAMETER COUNT (defaults, swiglu, untied):
    ─────────────────────────────────────────────
    Token Embedding (vocab_size × dim):        1,572,864
    8 Transformer Layers (1,573,632 each):    12,589,056
    Final norm (dim):                                384
    Output Projection (dim × vocab_size):      1,572,864
    ─────────────────────────────────────────────
    TOTAL:                                    15,735,168
    """

    # ── Vocabulary ──────────────────────────────────────────────────────────
    # Number of token ids the embedding and output head cover. Must agree with
    # the tokenizer: ids >= vocab_size are rejected by Transformer.forward.
    vocab_size: int = 4096

    # ── Model Dimensions ───────────────────────────────────────────────────
    # Width of the residual stream.
    dim: int = 384

    # ── Depth ──────────────────────────────────────────────────────────────
    n_layers: int = 8

    # ── Attention Heads ────────────────────────────────────────────────────
    # n_heads query heads share n_kv_heads key/value heads (GQA).
    #   n_kv_heads == n_heads : standard multi-head attention
    #   n_kv_heads == 1       : multi-query attention
    # The KV cache is sized by n_kv_heads, so GQA shrinks it by n_kv_groups.
    n_heads: int = 6
    n_kv_heads: int = 2

    # ── Sequence Length ────────────────────────────────────────────────────
    # Hard context limit. Sizes the RoPE tables, the learned position table
    # and the KV cache arena. A forward pass that would reach past it raises
    # CapacityError.
    max_seq_len: int = 512

    # ── Feed-Forward Network ───────────────────────────────────────────────
    # Intermediate width. SwiGLU uses three matrices, GELU uses two.
    hidden_dim: int = 1024

    # ── Normalization ──────────────────────────────────────────────────────
    norm_eps: float = 1e-5
    norm_type: str = "rmsnorm"

    # ── Feed-forward nonlinearity ──────────────────────────────────────────
    ffn_type: str = "swiglu"

    # ── Positional Encoding ────────────────────────────────────────────────
    # "rope" rotates Q and K by the absolute position using rope_theta as the
    # frequency base. "learned" adds a (max_seq_len, dim) embedding table to
    # the token embeddings instead.
    position_encoding: str = "rope"
    rope_theta: float = 10000.0

    # ── Bias terms ─────────────────────────────────────────────────────────
    # LLaMA has none. GPT-style models carry biases on every linear layer.
    bias: bool = False

    # ── Weight Tying ───────────────────────────────────────────────────────
    # Share the token embedding matrix with the output projection.
    weight_tying: bool = False

    # ── Special tokens ─────────────────────────────────────────────────────
    # Beginning/end of sequence ids as baked into the weights. When add_bos
    # is set the session prepends bos_id to every prompt that lacks it.
    # eos_id < 0 means the model has no end-of-sequence token.
    bos_id: int = 1
    eos_id: int = 2
    add_bos: bool = True

    @property
    def head_dim(self) -> int:
        """Dimension of each attention head (dim / n_heads)."""
        if self.n_heads <= 0 or self.dim % self.n_heads != 0:
            raise ValidationError(
                f"dim ({self.dim}) must be divisible by n_heads ({self.n_heads})",
                field="n_heads",
            )
        return self.dim // self.n_heads

    @property
    def n_kv_groups(self) -> int:
        """Number of query heads sharing one KV head."""
        if self.n_kv_heads <= 0 or self.n_heads % self.n_kv_heads != 0:
            raise ValidationError(
                f"n_heads ({self.n_heads}) must be divisible by "
                f"n_kv_heads ({self.n_kv_heads})",
                field="n_kv_heads",
            )
        return self.n_heads // self.n_kv_heads

    def validate(self) -> None:
        """
        Validate configuration constraints.

        Called before model creation so that a bad file header surfaces as a
        ValidationError instead of a cryptic shape error deep in a kernel.
        """
        for name in ("vocab_size", "dim", "n_layers", "n_heads", "n_kv_heads",
                     "max_seq_len", "hidden_dim"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ValidationError(f"{name} must be a positive int, got {value!r}", field=name)
        if self.n_kv_heads > self.n_heads:
            raise ValidationError(
                f"n_kv_heads ({self.n_kv_heads}) cannot exceed n_heads ({self.n_heads})",
                field="n_kv_heads",
            )
        # Both properties raise on indivisible dims.
        head_dim = self.head_dim
        _ = self.n_kv_groups
        if self.position_encoding == "rope" and head_dim % 2 != 0:
            raise ValidationError(
                f"head_dim ({head_dim}) must be even for RoPE rotation pairs",
                field="dim",
            )
        if self.norm_type not in NORM_TYPES:
            raise ValidationError(f"norm_type must be one of {NORM_TYPES}", field="norm_type")
        if self.ffn_type not in FFN_TYPES:
            raise ValidationError(f"ffn_type must be one of {FFN_TYPES}", field="ffn_type")
        if self.position_encoding not in POSITION_ENCODINGS:
            raise ValidationError(
                f"position_encoding must be one of {POSITION_ENCODINGS}",
                field="position_encoding",
            )
        if not (self.norm_eps > 0):
            raise ValidationError("norm_eps must be positive", field="norm_eps")
        if not (self.rope_theta > 0):
            raise ValidationError("rope_theta must be positive", field="rope_theta")
        if not (0 <= self.bos_id < self.vocab_size):
            raise ValidationError(
                f"bos_id ({self.bos_id}) outside vocabulary [0, {self.vocab_size})",
                field="bos_id",
            )
        if self.eos_id >= self.vocab_size:
            raise ValidationError(
                f"eos_id ({self.eos_id}) outside vocabulary [0, {self.vocab_size})",
                field="eos_id",
            )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization (checkpoint / model file headers)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ModelConfig":
        """
        Reconstruct from a dictionary.

        Unknown keys are ignored so that files written by a newer runtime
        with extra metadata still load.
        """
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "ModelConfig":
        """Load configuration from JSON file."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))


@dataclass(frozen=True)
class InferenceOptions:
    """
    Resource-governance contract for one generation request.

    Immutable: a session reads it once at construction. Use
    with_overrides() to derive a tweaked copy, e.g. to retry with
    truncate_input=True after a ResourceLimitError.

    LIMITS (0 disables a limit unless noted):
      max_input_tokens     Prompt length after encoding (BOS included).
                           Over the limit: reject with ResourceLimitError, or
                           keep the first max_input_tokens ids when
                           truncate_input is set.
      max_context_tokens   Prompt + generated tokens. Generation stops
                           cleanly (status COMPLETED, reason MAX_CONTEXT)
                           when the context fills up.
      max_new_tokens       Generated tokens. Must be positive.
      max_time_ms          Wall-clock budget measured from the start of the
                           stream. Breach gives status TIMED_OUT with the
                           tokens produced so far.

    SAMPLING:
      temperature          0 = greedy argmax; otherwise logits / temperature.
      top_k                Keep the k highest logits (0 = disabled, 1 = greedy).
      top_p                Nucleus threshold in [0, 1] (1 = disabled).
      seed                 Seeds the session-owned torch.Generator. Identical
                           (model, prompt, options) with a seed produce
                           identical tokens.
    """

    max_input_tokens: int = 2048
    max_context_tokens: int = 4096
    max_new_tokens: int = 100
    max_time_ms: int = 0
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    seed: Optional[int] = None
    truncate_input: bool = False
    stop_on_eos: bool = True

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        for name in ("max_input_tokens", "max_context_tokens", "max_time_ms", "top_k"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative int, got {value!r}", field=name)
        if isinstance(self.max_new_tokens, bool) or not isinstance(self.max_new_tokens, int) \
                or self.max_new_tokens <= 0:
            raise ValidationError(
                f"max_new_tokens must be a positive int, got {self.max_new_tokens!r}",
                field="max_new_tokens",
            )
        if not isinstance(self.temperature, (int, float)) or not math.isfinite(self.temperature) \
                or self.temperature < 0:
            raise ValidationError(
                f"temperature must be a finite number >= 0, got {self.temperature!r}",
                field="temperature",
            )
        if not isinstance(self.top_p, (int, float)) or not (0.0 <= self.top_p <= 1.0):
            raise ValidationError(f"top_p must be in [0, 1], got {self.top_p!r}", field="top_p")
        if self.seed is not None and (isinstance(self.seed, bool) or not isinstance(self.seed, int)):
            raise ValidationError(f"seed must be an int or None, got {self.seed!r}", field="seed")
        if (self.max_context_tokens > 0 and self.max_input_tokens > 0
                and self.max_input_tokens > self.max_context_tokens):
            raise ValidationError(
                f"max_input_tokens ({self.max_input_tokens}) cannot exceed "
                f"max_context_tokens ({self.max_context_tokens})",
                field="max_input_tokens",
            )

    @property
    def is_greedy(self) -> bool:
        return self.temperature == 0 or self.top_k == 1

    def with_overrides(self, **changes) -> "InferenceOptions":
        """Return a validated copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EngineConfig:
    """
    Settings for InferenceEngine.

    max_concurrent_sessions  Size of the admission semaphore. 0 = unbounded.
    num_threads              torch intra-op threads. 0 leaves torch's default.
    max_workers              Thread pool size for submit(). 0 = derive from
                             max_concurrent_sessions (or 4 when unbounded).
    """

    max_concurrent_sessions: int = 4
    num_threads: int = 0
    max_workers: int = 0

    def __post_init__(self):
        for name in ("max_concurrent_sessions", "num_threads", "max_workers"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative int, got {value!r}", field=name)

    @property
    def worker_count(self) -> int:
        if self.max_workers > 0:
            return self.max_workers
        return self.max_concurrent_sessions or 4
