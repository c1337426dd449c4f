"""
Numeric kernels: the vectorized primitives every layer is built from.

All kernels operate on contiguous float32 torch tensors and follow the same
conventions:

  1. SHAPES ARE CHECKED FIRST. A mismatch raises ShapeMismatchError before any
     arithmetic runs, naming the kernel and both shapes. Shape errors are
     always model-definition bugs, so they are never retried.

  2. OUTPUTS CAN BE PREALLOCATED. Every kernel that produces a new tensor
     takes an optional `out=` argument. With `out` given the result is
     written there and no heap allocation of result size happens. This is
     how the decode loop reaches a steady state where scratch memory comes
     from the BufferPool instead of the allocator. With `out=None` the kernel
     allocates, which is what the autograd (training-mode) path uses.

  3. NaN/Inf ARE NOT CORRECTED. Kernels propagate non-finite values exactly
     as IEEE arithmetic does. Detecting them is the session's job.

VECTORIZATION AND THREADS:
  The heavy lifting is delegated to torch's CPU kernels, which already split
  work into SIMD-width chunks and handle the scalar remainder. Large matrix
  multiplies are spread across torch's intra-op thread pool; torch only
  parallelizes past an internal grain size, so tiny decode-step matmuls stay
  on the calling thread. set_num_threads() sizes that pool.

THE FUSED SOFTMAX:
  Attention needs, per query row r with `cache_offset` positions already
  cached:

      valid = cache_offset + r + 1                 # causal window
      p[r, :valid] = softmax(scale * s[r, :valid])
      p[r, valid:] = 0

  fused_scale_mask_softmax does this in place over the score buffer. The
  work is restricted to the columns [0, cache_offset + T) that can be valid
  for ANY row; trailing columns are zeroed without exponentiation.
"""

import logging
import math
from typing import Optional, Sequence

import torch
import torch.nn.functional as F

from llama_rt.errors import ShapeMismatchError, ValidationError

logger = logging.getLogger(__name__)

# Largest element count addressable with a signed 32-bit index.
MAX_ELEMENTS = 2**31 - 1


# ═══════════════════════════════════════════════════════════════════════════
# Tensor construction
# ═══════════════════════════════════════════════════════════════════════════

def checked_numel(shape: Sequence[int]) -> int:
    """
    Element count of `shape`, validated.

    Every dimension must be a positive int and the product must fit in a
    signed 32-bit index. Oversized tensors are rejected rather than
    truncated.
    """
    numel = 1
    for d in shape:
        if isinstance(d, bool) or not isinstance(d, int) or d <= 0:
            raise ValidationError(f"tensor dimensions must be positive ints, got {tuple(shape)}",
                                  field="shape")
        numel *= d
        if numel > MAX_ELEMENTS:
            raise ValidationError(
                f"tensor of shape {tuple(shape)} exceeds {MAX_ELEMENTS} elements",
                field="shape",
            )
    return numel


def new_tensor(shape: Sequence[int], dtype: torch.dtype = torch.float32) -> torch.Tensor:
    """Zero-filled tensor after shape validation."""
    checked_numel(shape)
    return torch.zeros(tuple(shape), dtype=dtype)


def _check_out(op: str, out: Optional[torch.Tensor], shape: Sequence[int]) -> None:
    if out is not None and tuple(out.shape) != tuple(shape):
        raise ShapeMismatchError(f"{op}(out)", shape, out.shape)


# ═══════════════════════════════════════════════════════════════════════════
# Matrix multiply
# ═══════════════════════════════════════════════════════════════════════════

def matmul(a: torch.Tensor, b: torch.Tensor, out: Optional[torch.Tensor] = None) -> torch.Tensor:
    """
    C = A · B for (..., M, K) × (..., K, N) → (..., M, N).

    Leading (batch) dims broadcast as in torch.matmul.
    """
    if a.dim() < 2 or b.dim() < 2:
        raise ShapeMismatchError("matmul", ("...", "M", "K"), a.shape if a.dim() < 2 else b.shape)
    if a.shape[-1] != b.shape[-2]:
        raise ShapeMismatchError("matmul", (*a.shape[:-1], b.shape[-2]), a.shape)
    try:
        batch = torch.broadcast_shapes(a.shape[:-2], b.shape[:-2])
    except RuntimeError:
        raise ShapeMismatchError("matmul", a.shape[:-2], b.shape[:-2]) from None
    _check_out("matmul", out, (*batch, a.shape[-2], b.shape[-1]))
    return torch.matmul(a, b, out=out)


def matmul_transpose_b(
    a: torch.Tensor,
    b: torch.Tensor,
    out: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    C = A · Bᵀ for (..., M, K) × (..., N, K) → (..., M, N).

    Bᵀ is a strided view (b.transpose(-2, -1)); the transpose is never
    materialized. This is the Q·Kᵀ score computation, where K lives in the
    cache arena in (position, head_dim) row-major order.
    """
    if a.dim() < 2 or b.dim() < 2:
        raise ShapeMismatchError("matmul_transpose_b", ("...", "M", "K"),
                                 a.shape if a.dim() < 2 else b.shape)
    if a.shape[-1] != b.shape[-1]:
        raise ShapeMismatchError("matmul_transpose_b", (*b.shape[:-1], a.shape[-1]), b.shape)
    try:
        batch = torch.broadcast_shapes(a.shape[:-2], b.shape[:-2])
    except RuntimeError:
        raise ShapeMismatchError("matmul_transpose_b", a.shape[:-2], b.shape[:-2]) from None
    _check_out("matmul_transpose_b", out, (*batch, a.shape[-2], b.shape[-2]))
    return torch.matmul(a, b.transpose(-2, -1), out=out)


def linear(
    x: torch.Tensor,
    weight: torch.Tensor,
    bias: Optional[torch.Tensor] = None,
    out: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    y = x · Wᵀ + b with W stored (out_features, in_features), as nn.Linear does.
    """
    if weight.dim() != 2 or x.shape[-1] != weight.shape[1]:
        raise ShapeMismatchError("linear", (*x.shape[:-1], weight.shape[-1]), x.shape)
    if bias is not None and tuple(bias.shape) != (weight.shape[0],):
        raise ShapeMismatchError("linear(bias)", (weight.shape[0],), bias.shape)
    _check_out("linear", out, (*x.shape[:-1], weight.shape[0]))
    y = torch.matmul(x, weight.transpose(0, 1), out=out)
    if bias is not None:
        if out is None:
            y = y + bias
        else:
            y.add_(bias)
    return y


# ═══════════════════════════════════════════════════════════════════════════
# Softmax
# ═══════════════════════════════════════════════════════════════════════════

def fused_scale_mask_softmax(
    scores: torch.Tensor,
    scale: float,
    cache_offset: int = 0,
) -> torch.Tensor:
    """
    Scale, causally mask and softmax attention scores in one pass.

    Args:
        scores: (..., T, S) raw Q·Kᵀ scores. Row r is the query at absolute
                position cache_offset + r; column c is the key at position c.
        scale: Multiplier applied before the softmax (1/sqrt(head_dim)).
        cache_offset: Number of positions cached before this call's tokens.

    Returns:
        The probability tensor. It is `scores` itself (modified in place)
        unless autograd is tracking `scores`, in which case a new tensor is
        returned so the backward graph stays valid.

    Row r is normalized over columns [0, cache_offset + r + 1) only. The row
    max is taken over the valid columns, so masked garbage can never leak
    into the normalizer. Columns outside the window come out as exact zeros.
    """
    if scores.dim() < 2:
        raise ShapeMismatchError("fused_scale_mask_softmax", ("...", "T", "S"), scores.shape)
    if cache_offset < 0:
        raise ValidationError(f"cache_offset must be >= 0, got {cache_offset}", field="cache_offset")
    t, s = scores.shape[-2], scores.shape[-1]
    width = cache_offset + t
    if width > s:
        raise ShapeMismatchError("fused_scale_mask_softmax", (*scores.shape[:-1], width), scores.shape)

    if scores.requires_grad and torch.is_grad_enabled():
        return _scale_mask_softmax_autograd(scores, scale, cache_offset)

    if width < s:
        scores[..., width:].zero_()
    valid = scores[..., :width]
    valid.mul_(scale)
    if t > 1:
        # Strict upper triangle shifted by the offset: column > offset + row.
        future = torch.ones(t, width, dtype=torch.bool, device=scores.device).triu_(cache_offset + 1)
        valid.masked_fill_(future, float("-inf"))
    softmax_(valid)
    return scores


def _scale_mask_softmax_autograd(scores: torch.Tensor, scale: float, cache_offset: int) -> torch.Tensor:
    t, s = scores.shape[-2], scores.shape[-1]
    future = torch.ones(t, s, dtype=torch.bool, device=scores.device).triu(cache_offset + 1)
    return F.softmax((scores * scale).masked_fill(future, float("-inf")), dim=-1)


def softmax_(x: torch.Tensor) -> torch.Tensor:
    """Numerically stable in-place softmax over the last dimension."""
    x.sub_(x.amax(dim=-1, keepdim=True))
    x.exp_()
    x.div_(x.sum(dim=-1, keepdim=True))
    return x


# ═══════════════════════════════════════════════════════════════════════════
# Element-wise ops
# ═══════════════════════════════════════════════════════════════════════════

def _check_broadcast(op: str, a: torch.Tensor, b: torch.Tensor) -> None:
    try:
        shape = torch.broadcast_shapes(a.shape, b.shape)
    except RuntimeError:
        raise ShapeMismatchError(op, a.shape, b.shape) from None
    if tuple(shape) != tuple(a.shape):
        raise ShapeMismatchError(op, a.shape, b.shape)


def add_(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """a += b (b broadcast to a)."""
    _check_broadcast("add_", a, b)
    return a.add_(b)


def mul_(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """a *= b (b broadcast to a)."""
    _check_broadcast("mul_", a, b)
    return a.mul_(b)


def scale_(a: torch.Tensor, factor: float) -> torch.Tensor:
    return a.mul_(factor)


def silu(x: torch.Tensor, out: Optional[torch.Tensor] = None) -> torch.Tensor:
    """SiLU / Swish: x · σ(x). `out` may alias `x`."""
    if out is None:
        return F.silu(x)
    _check_out("silu", out, x.shape)
    if out.data_ptr() == x.data_ptr():
        return F.silu(out, inplace=True)
    torch.sigmoid(x, out=out)
    return out.mul_(x)


_GELU_C = math.sqrt(2.0 / math.pi)


def gelu(x: torch.Tensor, out: Optional[torch.Tensor] = None) -> torch.Tensor:
    """
    GELU, tanh approximation (GPT-2 flavour):

        0.5 · x · (1 + tanh(√(2/π) · (x + 0.044715 · x³)))

    With `out` given (and distinct from `x`) no temporaries are allocated.
    """
    if out is None:
        return F.gelu(x, approximate="tanh")
    _check_out("gelu", out, x.shape)
    if out.data_ptr() == x.data_ptr():
        return out.copy_(F.gelu(x, approximate="tanh"))
    torch.pow(x, 3, out=out)
    out.mul_(0.044715).add_(x).mul_(_GELU_C).tanh_()
    return out.add_(1.0).mul_(x).mul_(0.5)


# ═══════════════════════════════════════════════════════════════════════════
# Normalization
# ═══════════════════════════════════════════════════════════════════════════

def rms_norm(
    x: torch.Tensor,
    weight: torch.Tensor,
    eps: float,
    out: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    y = x / sqrt(mean(x²) + eps) · weight over the last dimension.

    Only a (..., 1) temporary is allocated for the per-row scale.
    """
    if tuple(weight.shape) != (x.shape[-1],):
        raise ShapeMismatchError("rms_norm", (x.shape[-1],), weight.shape)
    _check_out("rms_norm", out, x.shape)
    inv = torch.linalg.vector_norm(x, dim=-1, keepdim=True)
    if inv.requires_grad and torch.is_grad_enabled():
        inv = torch.rsqrt(inv.pow(2) / x.shape[-1] + eps)
        return x * inv * weight
    inv.pow_(2).div_(x.shape[-1]).add_(eps).rsqrt_()
    y = torch.mul(x, inv, out=out)
    return y.mul_(weight)


def layer_norm(
    x: torch.Tensor,
    weight: torch.Tensor,
    bias: Optional[torch.Tensor],
    eps: float,
    out: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    if tuple(weight.shape) != (x.shape[-1],):
        raise ShapeMismatchError("layer_norm", (x.shape[-1],), weight.shape)
    _check_out("layer_norm", out, x.shape)
    y = F.layer_norm(x, (x.shape[-1],), weight, bias, eps)
    if out is None:
        return y
    return out.copy_(y)


# ═══════════════════════════════════════════════════════════════════════════
# Threads
# ═══════════════════════════════════════════════════════════════════════════

def set_num_threads(n: int) -> None:
    """Size torch's intra-op thread pool. n <= 0 leaves the current setting."""
    if n > 0:
        torch.set_num_threads(n)
        logger.info("intra-op threads set to %d", n)


def get_num_threads() -> int:
    return torch.get_num_threads()
