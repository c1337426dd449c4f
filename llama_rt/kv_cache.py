"""
Pre-sized key/value cache for incremental decoding.

During autoregressive generation every new token attends to the keys and
values of all earlier tokens. Recomputing them each step costs O(N²) over a
generation; caching them makes each step O(N).

ARENA LAYOUT:
  One keys arena and one values arena per layer, allocated once at
  construction and never resized:

      keys[layer]   : (batch, n_kv_heads, max_seq_len, head_dim)
      values[layer] : (batch, n_kv_heads, max_seq_len, head_dim)

  Position is the second-to-last axis so that keys(layer, n) is a strided
  view whose last two dims are a row-major (n, head_dim) matrix per head,
  exactly the operand layout kernels.matmul_transpose_b wants for Q·Kᵀ.

STATE MACHINE:
      EMPTY (length 0) ──append/commit──▶ GROWING (1..max-1) ──▶ FULL (max)
        ▲                                                          │
        └──────────────────────────── reset() ─────────────────────┘

WRITE PROTOCOL (one forward pass = one step):
  1. For layer 0, 1, ..., n_layers-1 in order: append(layer, k, v) writes T
     new positions starting at `length`. Positions are not yet visible to
     other steps, but keys(layer, length + T) already returns them so the
     layer can attend over its own new tokens.
  2. commit() advances `length` by T once every layer has written.

  Appends are monotonic: there is no way to write at a position other than
  `length`. Writing past max_seq_len raises CapacityError before any data is
  touched. Out-of-order writes (skipping a layer, writing a layer twice,
  committing a half-written step) raise CapacityError as well. rollback()
  discards a half-written step after a failed forward pass.

A cache belongs to exactly one session. It has no lock.
"""

import enum
import logging

import torch

from llama_rt.errors import CapacityError, ShapeMismatchError, ValidationError
from llama_rt.kernels import checked_numel

logger = logging.getLogger(__name__)


class CacheState(enum.Enum):
    EMPTY = "empty"
    GROWING = "growing"
    FULL = "full"


class KVCache:
    """Per-layer key/value arenas with a single monotonic write cursor."""

    def __init__(
        self,
        n_layers: int,
        n_kv_heads: int,
        head_dim: int,
        max_seq_len: int,
        batch_size: int = 1,
        dtype: torch.dtype = torch.float32,
        device=None,
    ):
        for name, value in (("n_layers", n_layers), ("n_kv_heads", n_kv_heads),
                            ("head_dim", head_dim), ("max_seq_len", max_seq_len),
                            ("batch_size", batch_size)):
            if value <= 0:
                raise ValidationError(f"{name} must be positive, got {value}", field=name)
        shape = (batch_size, n_kv_heads, max_seq_len, head_dim)
        checked_numel(shape)

        self.n_layers = n_layers
        self.n_kv_heads = n_kv_heads
        self.head_dim = head_dim
        self.max_seq_len = max_seq_len
        self.batch_size = batch_size

        with torch.inference_mode(False):
            self._keys = [torch.zeros(shape, dtype=dtype, device=device) for _ in range(n_layers)]
            self._values = [torch.zeros(shape, dtype=dtype, device=device) for _ in range(n_layers)]

        self._length = 0
        self._pending = 0          # positions written by the in-flight step
        self._layers_written = 0   # layers that wrote during the in-flight step

    # ── Introspection ──────────────────────────────────────────────────────

    @property
    def length(self) -> int:
        """Committed positions."""
        return self._length

    @property
    def capacity(self) -> int:
        return self.max_seq_len

    @property
    def remaining(self) -> int:
        return self.max_seq_len - self._length

    @property
    def state(self) -> CacheState:
        if self._length == 0:
            return CacheState.EMPTY
        if self._length >= self.max_seq_len:
            return CacheState.FULL
        return CacheState.GROWING

    @property
    def nbytes(self) -> int:
        per_layer = self._keys[0].numel() * self._keys[0].element_size()
        return 2 * self.n_layers * per_layer

    # ── Writes ─────────────────────────────────────────────────────────────

    def append(self, layer: int, k: torch.Tensor, v: torch.Tensor) -> None:
        """
        Write T new positions for `layer`.

        Args:
            layer: Layer index. Must equal the number of layers already
                   written in this step.
            k, v: (batch, n_kv_heads, T, head_dim) projections, RoPE already
                  applied to k.
        """
        expected = (self.batch_size, self.n_kv_heads, k.shape[2] if k.dim() == 4 else -1, self.head_dim)
        if k.dim() != 4 or tuple(k.shape) != expected:
            raise ShapeMismatchError("KVCache.append(k)", expected, k.shape)
        if tuple(v.shape) != tuple(k.shape):
            raise ShapeMismatchError("KVCache.append(v)", k.shape, v.shape)
        t = k.shape[2]

        if layer != self._layers_written:
            raise CapacityError(
                f"out-of-order cache write: layer {layer} while expecting layer "
                f"{self._layers_written}",
                capacity=self.max_seq_len,
                requested=self._length + t,
            )
        if self._layers_written > 0 and t != self._pending:
            raise ShapeMismatchError("KVCache.append", (self._pending,), (t,))
        if self._length + t > self.max_seq_len:
            raise CapacityError(
                f"KV cache full: {self._length} + {t} positions exceeds capacity "
                f"{self.max_seq_len}",
                capacity=self.max_seq_len,
                requested=self._length + t,
            )

        start = self._length
        self._keys[layer][:, :, start:start + t].copy_(k)
        self._values[layer][:, :, start:start + t].copy_(v)
        self._pending = t
        self._layers_written += 1

    def commit(self) -> int:
        """Publish the in-flight step. Returns the new length."""
        if self._layers_written != self.n_layers:
            raise CapacityError(
                f"cannot commit: {self._layers_written}/{self.n_layers} layers written",
                capacity=self.max_seq_len,
                requested=self._length + self._pending,
            )
        self._length += self._pending
        self._pending = 0
        self._layers_written = 0
        if self._length == self.max_seq_len:
            logger.debug("KV cache reached capacity (%d positions)", self.max_seq_len)
        return self._length

    def rollback(self) -> None:
        """Discard a half-written step. Committed positions are untouched."""
        self._pending = 0
        self._layers_written = 0

    def reset(self) -> None:
        """Back to EMPTY. The arena is kept and reused."""
        self._length = 0
        self.rollback()

    # ── Reads ──────────────────────────────────────────────────────────────

    def _visible(self, layer: int) -> int:
        if layer < self._layers_written:
            return self._length + self._pending
        return self._length

    def keys(self, layer: int, upto: int = -1) -> torch.Tensor:
        """View of the first `upto` key positions (default: all visible)."""
        return self._read(self._keys, layer, upto)

    def values(self, layer: int, upto: int = -1) -> torch.Tensor:
        """View of the first `upto` value positions (default: all visible)."""
        return self._read(self._values, layer, upto)

    def _read(self, arenas, layer: int, upto: int) -> torch.Tensor:
        if not 0 <= layer < self.n_layers:
            raise ValidationError(f"layer {layer} out of range [0, {self.n_layers})", field="layer")
        visible = self._visible(layer)
        if upto < 0:
            upto = visible
        if upto > visible:
            raise CapacityError(
                f"read of {upto} positions but only {visible} are written",
                capacity=self.max_seq_len,
                requested=upto,
            )
        return arenas[layer][:, :, :upto]

    def __repr__(self) -> str:
        return (
            f"KVCache(layers={self.n_layers}, kv_heads={self.n_kv_heads}, "
            f"head_dim={self.head_dim}, length={self._length}/{self.max_seq_len})"
        )
