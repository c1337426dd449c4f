"""
Transformer decoder: the forward pass behind every generation step.

ARCHITECTURE OVERVIEW (bottom-up reading order):
  1. RMSNorm / LayerNorm  : pre-normalization layers
  2. RoPE                 : rotary positional embeddings at ABSOLUTE positions
  3. FeedForward          : SwiGLU (LLaMA) or GELU (GPT) MLP
  4. Attention            : grouped query attention over the KV cache
  5. TransformerBlock     : attention + FFN with residuals
  6. Transformer          : embeddings, N blocks, final norm, output head

TWO EXECUTION MODES, ONE CODE PATH:
  ┌──────────────────┬───────────────────────────┬─────────────────────────┐
  │                  │ Block mode (kv_cache=None)│ Cached mode (kv_cache)  │
  ├──────────────────┼───────────────────────────┼─────────────────────────┤
  │ Tokens per call  │ full block of T           │ 1..T new tokens         │
  │ Keys attended    │ the T tokens of the call  │ cache[0 : offset+T]     │
  │ Causal window    │ row r sees [0, r]         │ row r sees [0, offset+r]│
  │ Positions        │ 0..T-1                    │ offset..offset+T-1      │
  │ Typical use      │ loss over a block         │ prefill + decode        │
  └──────────────────┴───────────────────────────┴─────────────────────────┘

  Both modes share the kernels and differ only in `cache_offset`, which is 0
  in block mode. RoPE is applied at absolute positions in both, so feeding a
  prompt token-by-token through the cache yields the same last-token logits
  as one block pass (up to float rounding).

SCRATCH MEMORY:
  When a BufferPool is passed and autograd is not active, every intermediate
  (projections, rotated heads, scores, FFN activations) is written into pool
  views through the kernels' `out=` arguments. Each TransformerBlock returns
  its scratch to the pool before the next block runs, so a decode step's
  peak scratch is one layer's worth and steady-state decoding allocates only
  the returned logits.

  Without a pool (or while training), the same kernels allocate their
  results and autograd works as usual.

WEIGHTS ARE READ-ONLY:
  No forward pass writes to a parameter. One model instance is shared by
  every concurrent session in the engine; all mutable state lives in the
  per-session KVCache and the rented scratch buffers.
"""

import logging
import math
from typing import Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from llama_rt import kernels
from llama_rt.config import ModelConfig
from llama_rt.errors import CapacityError, ShapeMismatchError, ValidationError
from llama_rt.kv_cache import KVCache
from llama_rt.pool import BufferPool, Scratch

logger = logging.getLogger(__name__)


def _into(dst: Optional[torch.Tensor], src: torch.Tensor) -> torch.Tensor:
    """Materialize `src` contiguously, into `dst` when a buffer is available."""
    if dst is None:
        return src.contiguous()
    return dst.copy_(src)


def _residual(h: torch.Tensor, delta: torch.Tensor) -> torch.Tensor:
    # In place unless autograd needs h for a backward pass.
    if torch.is_grad_enabled() and (h.requires_grad or delta.requires_grad):
        return h + delta
    return h.add_(delta)


# ═══════════════════════════════════════════════════════════════════════════
# 1. Normalization
# ═══════════════════════════════════════════════════════════════════════════

class RMSNorm(nn.Module):
    """
    Root Mean Square Layer Normalization (Zhang & Sennrich, 2019).

        RMSNorm(x) = x / sqrt(mean(x²) + eps) · gamma

    No mean centering and no beta. gamma is initialized to ones.
    """

    def __init__(self, dim: int, eps: float = 1e-5):
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(dim))

    def forward(self, x: torch.Tensor, out: Optional[torch.Tensor] = None) -> torch.Tensor:
        return kernels.rms_norm(x, self.weight, self.eps, out=out)


class LayerNorm(nn.Module):
    """Standard LayerNorm with gamma and beta, for GPT-style checkpoints."""

    def __init__(self, dim: int, eps: float = 1e-5):
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(dim))
        self.bias = nn.Parameter(torch.zeros(dim))

    def forward(self, x: torch.Tensor, out: Optional[torch.Tensor] = None) -> torch.Tensor:
        return kernels.layer_norm(x, self.weight, self.bias, self.eps, out=out)


def build_norm(config: ModelConfig) -> nn.Module:
    if config.norm_type == "layernorm":
        return LayerNorm(config.dim, config.norm_eps)
    return RMSNorm(config.dim, config.norm_eps)


# ═══════════════════════════════════════════════════════════════════════════
# 2. RoPE: Rotary Positional Embeddings
# ═══════════════════════════════════════════════════════════════════════════

def precompute_rope_frequencies(
    head_dim: int,
    max_seq_len: int,
    theta: float = 10000.0,
    device: Optional[torch.device] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Precompute cos and sin tables for Rotary Positional Embeddings.

    Pair i of a head vector at absolute position m is rotated by the angle
    m · θᵢ with θᵢ = theta^(-2i/head_dim):

        [d_{2i}']     [cos(m·θᵢ)  -sin(m·θᵢ)] [d_{2i}  ]
        [d_{2i+1}'] = [sin(m·θᵢ)   cos(m·θᵢ)] [d_{2i+1}]

    Because rotations compose, dot(R_m·q, R_n·k) depends only on n - m,
    which is what makes cached decoding position-consistent: a key rotated
    at position 7 during prefill is exactly the key a later query expects.

    Args:
        head_dim: Dimension of each attention head (must be even).
        max_seq_len: Number of positions to precompute.
        theta: Frequency base (10000 for LLaMA 1/2, 500000 for LLaMA 3).
        device: Device to create tensors on.

    Returns:
        (freqs_cos, freqs_sin), each of shape (max_seq_len, head_dim // 2).
    """
    if head_dim % 2 != 0:
        raise ValidationError(f"head_dim must be even for RoPE, got {head_dim}", field="head_dim")
    dim_indices = torch.arange(0, head_dim, 2, device=device).float()
    freqs = 1.0 / (theta ** (dim_indices / head_dim))
    positions = torch.arange(max_seq_len, device=device).float()
    angles = torch.outer(positions, freqs)
    return angles.cos(), angles.sin()


def apply_rotary_embeddings(
    x: torch.Tensor,
    freqs_cos: torch.Tensor,
    freqs_sin: torch.Tensor,
    out: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    Rotate consecutive dimension pairs of `x` by position-dependent angles.

        x₀' = x₀ · cos(θ) - x₁ · sin(θ)
        x₁' = x₀ · sin(θ) + x₁ · cos(θ)

    Args:
        x: Query or key tensor of shape (batch, seq_len, n_heads, head_dim).
        freqs_cos: cos rows for the positions of x, shape (seq_len, head_dim // 2).
        freqs_sin: sin rows, same shape.
        out: Optional destination with x's shape. Must not alias x. The even
             and odd lanes are written through strided views, so no
             temporaries are created.

    Returns:
        Rotated tensor of the same shape as x.
    """
    if x.dim() != 4 or x.shape[-1] % 2 != 0:
        raise ShapeMismatchError("apply_rotary_embeddings", ("B", "T", "H", "2k"), x.shape)
    expected = (x.shape[1], x.shape[-1] // 2)
    if tuple(freqs_cos.shape) != expected or tuple(freqs_sin.shape) != expected:
        raise ShapeMismatchError("apply_rotary_embeddings(freqs)", expected, freqs_cos.shape)

    cos = freqs_cos.view(1, x.shape[1], 1, -1)
    sin = freqs_sin.view(1, x.shape[1], 1, -1)

    if out is None:
        x_reshaped = x.float().reshape(*x.shape[:-1], -1, 2)
        x_even = x_reshaped[..., 0]
        x_odd = x_reshaped[..., 1]
        x_rotated = torch.stack([x_even * cos - x_odd * sin, x_even * sin + x_odd * cos], dim=-1)
        return x_rotated.flatten(-2).type_as(x)

    if tuple(out.shape) != tuple(x.shape):
        raise ShapeMismatchError("apply_rotary_embeddings(out)", x.shape, out.shape)
    x_even, x_odd = x[..., 0::2], x[..., 1::2]
    out_even, out_odd = out[..., 0::2], out[..., 1::2]
    torch.mul(x_even, cos, out=out_even)
    out_even.addcmul_(x_odd, sin, value=-1.0)
    torch.mul(x_even, sin, out=out_odd)
    out_odd.addcmul_(x_odd, cos)
    return out


# ═══════════════════════════════════════════════════════════════════════════
# 3. FeedForward
# ═══════════════════════════════════════════════════════════════════════════

class FeedForward(nn.Module):
    """
    Position-wise MLP.

    SwiGLU (ffn_type="swiglu", LLaMA):
        FFN(x) = (SiLU(x·W_gate) ⊙ (x·W_up)) · W_down

    GELU (ffn_type="gelu", GPT-2):
        FFN(x) = GELU(x·W_up) · W_down

    The gate matrix only exists for SwiGLU; parameter names are otherwise
    shared so both variants load from the same file layout.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.ffn_type = config.ffn_type
        if config.ffn_type == "swiglu":
            self.w_gate = nn.Linear(config.dim, config.hidden_dim, bias=config.bias)
        self.w_up = nn.Linear(config.dim, config.hidden_dim, bias=config.bias)
        self.w_down = nn.Linear(config.hidden_dim, config.dim, bias=config.bias)

    def forward(self, x: torch.Tensor, scratch: Optional[Scratch] = None) -> torch.Tensor:
        sc = scratch or Scratch(None)
        b, t, dim = x.shape
        hidden = self.w_up.out_features
        up = kernels.linear(x, self.w_up.weight, self.w_up.bias, out=sc.take(b, t, hidden))
        if self.ffn_type == "swiglu":
            gate = kernels.linear(x, self.w_gate.weight, self.w_gate.bias, out=sc.take(b, t, hidden))
            if sc.pool is None:
                act = kernels.silu(gate) * up
            else:
                act = kernels.mul_(kernels.silu(gate, out=gate), up)
        else:
            act = kernels.gelu(up, out=sc.take(b, t, hidden))
        return kernels.linear(act, self.w_down.weight, self.w_down.bias, out=sc.take(b, t, dim))


# ═══════════════════════════════════════════════════════════════════════════
# 4. Attention
# ═══════════════════════════════════════════════════════════════════════════

class Attention(nn.Module):
    """
    Multi-head attention with Grouped Query Attention and the KV cache.

    Data flow for T new tokens with `offset` positions already cached
    (H query heads, KVH kv heads, G = H / KVH, D = head_dim):

      x (B, T, dim)
        ├─→ Wq → RoPE(offset..) → (B, H,   T, D) ─→ view (B, KVH, G·T, D)
        ├─→ Wk → RoPE(offset..) → (B, KVH, T, D) ─→ cache.append
        └─→ Wv                  → (B, KVH, T, D) ─→ cache.append
                                                         │
      scores = Q_g · K_cacheᵀ            (B, KVH, G·T, S = offset + T)
      probs  = fused_scale_mask_softmax(scores, 1/√D, offset)
      ctx    = probs · V_cache           (B, KVH, G·T, D) = (B, H, T, D)
        → (B, T, H·D) → Wo → (B, T, dim)

    GQA GROUPING:
      Query head h uses kv head h // G (the same assignment as
      repeat_interleave over the head axis). Viewing the H query heads as
      KVH groups of G·T rows lets one batched matmul per kv head serve the
      whole group, without repeating K and V in memory.
    """

    def __init__(self, layer_id: int, config: ModelConfig):
        super().__init__()
        self.layer_id = layer_id
        self.n_heads = config.n_heads
        self.n_kv_heads = config.n_kv_heads
        self.head_dim = config.head_dim
        self.n_kv_groups = config.n_kv_groups
        self.use_rope = config.position_encoding == "rope"
        self.scale = 1.0 / math.sqrt(self.head_dim)

        self.wq = nn.Linear(config.dim, config.n_heads * config.head_dim, bias=config.bias)
        self.wk = nn.Linear(config.dim, config.n_kv_heads * config.head_dim, bias=config.bias)
        self.wv = nn.Linear(config.dim, config.n_kv_heads * config.head_dim, bias=config.bias)
        self.wo = nn.Linear(config.n_heads * config.head_dim, config.dim, bias=config.bias)

    def forward(
        self,
        x: torch.Tensor,
        freqs_cos: Optional[torch.Tensor],
        freqs_sin: Optional[torch.Tensor],
        kv_cache: Optional[KVCache] = None,
        scratch: Optional[Scratch] = None,
    ) -> torch.Tensor:
        """
        Args:
            x: Normalized input of shape (batch, T, dim).
            freqs_cos, freqs_sin: RoPE rows for absolute positions
                offset..offset+T-1, or None for learned positions.
            kv_cache: Session cache. None means block mode.
            scratch: Scratch scope for intermediates.

        Returns:
            Output tensor of shape (batch, T, dim).
        """
        sc = scratch or Scratch(None)
        b, t, dim = x.shape
        h, kvh, d, g = self.n_heads, self.n_kv_heads, self.head_dim, self.n_kv_groups

        q = kernels.linear(x, self.wq.weight, self.wq.bias, out=sc.take(b, t, h * d)).view(b, t, h, d)
        k = kernels.linear(x, self.wk.weight, self.wk.bias, out=sc.take(b, t, kvh * d)).view(b, t, kvh, d)
        v = kernels.linear(x, self.wv.weight, self.wv.bias, out=sc.take(b, t, kvh * d)).view(b, t, kvh, d)

        if self.use_rope:
            q = apply_rotary_embeddings(q, freqs_cos, freqs_sin, out=sc.take(b, t, h, d))
            k = apply_rotary_embeddings(k, freqs_cos, freqs_sin, out=sc.take(b, t, kvh, d))

        # Head-major layout: (B, heads, T, D)
        qh = _into(sc.take(b, h, t, d), q.transpose(1, 2))
        kh = _into(sc.take(b, kvh, t, d), k.transpose(1, 2))
        vh = _into(sc.take(b, kvh, t, d), v.transpose(1, 2))

        if kv_cache is not None:
            offset = kv_cache.length
            kv_cache.append(self.layer_id, kh, vh)
            keys = kv_cache.keys(self.layer_id)
            values = kv_cache.values(self.layer_id)
        else:
            offset = 0
            keys, values = kh, vh
        s = keys.shape[2]

        qg = qh.view(b, kvh, g * t, d)
        scores = kernels.matmul_transpose_b(qg, keys, out=sc.take(b, kvh, g * t, s))
        probs = kernels.fused_scale_mask_softmax(scores.view(b, kvh, g, t, s), self.scale, offset)
        ctx = kernels.matmul(probs.reshape(b, kvh, g * t, s), values, out=sc.take(b, kvh, g * t, d))

        ctx = _into(sc.take(b, t, h, d), ctx.view(b, h, t, d).transpose(1, 2)).view(b, t, h * d)
        return kernels.linear(ctx, self.wo.weight, self.wo.bias, out=sc.take(b, t, dim))


# ═══════════════════════════════════════════════════════════════════════════
# 5. TransformerBlock
# ═══════════════════════════════════════════════════════════════════════════

class TransformerBlock(nn.Module):
    """
    One pre-norm decoder layer:

        h = h + Attention(Norm(h))
        h = h + FeedForward(Norm(h))

    The residual stream `h` belongs to the caller; the block adds into it in
    place when autograd is off. Scratch rented by the block is returned
    before it exits.
    """

    def __init__(self, layer_id: int, config: ModelConfig):
        super().__init__()
        self.layer_id = layer_id
        self.attention_norm = build_norm(config)
        self.attention = Attention(layer_id, config)
        self.ffn_norm = build_norm(config)
        self.feed_forward = FeedForward(config)

    def forward(
        self,
        h: torch.Tensor,
        freqs_cos: Optional[torch.Tensor],
        freqs_sin: Optional[torch.Tensor],
        kv_cache: Optional[KVCache] = None,
        pool: Optional[BufferPool] = None,
    ) -> torch.Tensor:
        with Scratch(pool) as sc:
            x = self.attention_norm(h, out=sc.take(*h.shape))
            h = _residual(h, self.attention(x, freqs_cos, freqs_sin, kv_cache, sc))
            x = self.ffn_norm(h, out=sc.take(*h.shape))
            h = _residual(h, self.feed_forward(x, sc))
        return h


# ═══════════════════════════════════════════════════════════════════════════
# 6. Transformer
# ═══════════════════════════════════════════════════════════════════════════

class Transformer(nn.Module):
    """
    Decoder-only transformer language model.

      tokens (B, T)
        → tok_embeddings (+ pos_embeddings when position_encoding="learned")
        → N × TransformerBlock
        → norm
        → output head → logits (B, T, vocab_size)

    MODES:
      model.train() / model.eval() switch both the nn.Module flag and
      requires_grad on every parameter. eval() is idempotent. Inference
      callers run under torch.inference_mode(); the weights are never
      written by a forward pass either way.

    WEIGHT INITIALIZATION (fresh models only, loaders overwrite everything):
      Normal(0, 0.02) for linear and embedding weights, zero biases, and
      the residual projections (wo, w_down) scaled by 1/sqrt(2·n_layers).
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        config.validate()
        self.config = config

        self.tok_embeddings = nn.Embedding(config.vocab_size, config.dim)
        if config.position_encoding == "learned":
            self.pos_embeddings = nn.Embedding(config.max_seq_len, config.dim)
        self.layers = nn.ModuleList([
            TransformerBlock(layer_id=i, config=config)
            for i in range(config.n_layers)
        ])
        self.norm = build_norm(config)
        self.output = nn.Linear(config.dim, config.vocab_size, bias=config.bias)
        if config.weight_tying:
            self.output.weight = self.tok_embeddings.weight

        if config.position_encoding == "rope":
            freqs_cos, freqs_sin = precompute_rope_frequencies(
                config.head_dim, config.max_seq_len, config.rope_theta
            )
            self.register_buffer("freqs_cos", freqs_cos, persistent=False)
            self.register_buffer("freqs_sin", freqs_sin, persistent=False)
        else:
            self.freqs_cos = None
            self.freqs_sin = None

        self.apply(self._init_weights)
        scale = 1.0 / math.sqrt(2 * config.n_layers)
        for layer in self.layers:
            nn.init.normal_(layer.attention.wo.weight, mean=0.0, std=0.02 * scale)
            nn.init.normal_(layer.feed_forward.w_down.weight, mean=0.0, std=0.02 * scale)

    def _init_weights(self, module: nn.Module) -> None:
        if isinstance(module, nn.Linear):
            nn.init.normal_(module.weight, mean=0.0, std=0.02)
            if module.bias is not None:
                nn.init.zeros_(module.bias)
        elif isinstance(module, nn.Embedding):
            nn.init.normal_(module.weight, mean=0.0, std=0.02)

    # ── Mode switching ─────────────────────────────────────────────────────

    def train(self, mode: bool = True) -> "Transformer":
        super().train(mode)
        for p in self.parameters():
            p.requires_grad_(mode)
        return self

    @property
    def is_trainable(self) -> bool:
        return self.tok_embeddings.weight.requires_grad

    def num_parameters(self) -> int:
        return sum(p.numel() for p in self.parameters())

    def new_kv_cache(self, batch_size: int = 1, max_seq_len: Optional[int] = None) -> KVCache:
        """KV cache sized for this model, capped at config.max_seq_len."""
        cap = self.config.max_seq_len if max_seq_len is None else min(max_seq_len, self.config.max_seq_len)
        return KVCache(
            n_layers=self.config.n_layers,
            n_kv_heads=self.config.n_kv_heads,
            head_dim=self.config.head_dim,
            max_seq_len=cap,
            batch_size=batch_size,
            dtype=self.tok_embeddings.weight.dtype,
            device=self.tok_embeddings.weight.device,
        )

    # ── Forward ────────────────────────────────────────────────────────────

    def _check_inputs(self, tokens: torch.Tensor, kv_cache: Optional[KVCache]) -> int:
        if tokens.dim() != 2 or tokens.shape[1] == 0:
            raise ShapeMismatchError("Transformer.forward(tokens)", ("B", "T>0"), tokens.shape)
        b, t = tokens.shape
        offset = 0
        if kv_cache is not None:
            cfg = self.config
            expected = (cfg.n_layers, cfg.n_kv_heads, cfg.head_dim, b)
            actual = (kv_cache.n_layers, kv_cache.n_kv_heads, kv_cache.head_dim, kv_cache.batch_size)
            if expected != actual:
                raise ShapeMismatchError("Transformer.forward(kv_cache)", expected, actual)
            offset = kv_cache.length
        if offset + t > self.config.max_seq_len:
            raise CapacityError(
                f"sequence of {offset + t} positions exceeds max_seq_len {self.config.max_seq_len}",
                capacity=self.config.max_seq_len,
                requested=offset + t,
            )
        lo, hi = int(tokens.min()), int(tokens.max())
        if lo < 0 or hi >= self.config.vocab_size:
            raise ValidationError(
                f"token ids must be in [0, {self.config.vocab_size}), got range [{lo}, {hi}]",
                field="tokens",
            )
        return offset

    def forward(
        self,
        tokens: torch.Tensor,
        targets: Optional[torch.Tensor] = None,
        kv_cache: Optional[KVCache] = None,
        pool: Optional[BufferPool] = None,
        last_only: bool = False,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        """
        Forward pass of the full model.

        BLOCK MODE (kv_cache=None):
          tokens (B, T) at positions 0..T-1 with a causal mask over the
          block. With `targets`, also returns the mean cross-entropy
          (ignore_index=-1).

        CACHED MODE (kv_cache given):
          tokens (B, T) are the NEXT T positions after kv_cache.length. Their
          keys/values are appended and committed; on any exception the
          half-written step is rolled back so the cache stays consistent.

        Args:
            tokens: Token ids, shape (batch, T), values in [0, vocab_size).
            targets: Optional next-token ids for the loss, shape (batch, T).
            kv_cache: Session-owned cache for incremental decoding.
            pool: Scratch buffer pool; ignored while autograd is active.
            last_only: Only project the last position to logits
                       (generation does not need the others).

        Returns:
            (logits, loss). logits is (batch, T or 1, vocab_size); loss is
            None without targets.

        Raises:
            CapacityError: offset + T exceeds max_seq_len or cache capacity.
            ValidationError: token ids outside the vocabulary.
            ShapeMismatchError: malformed tokens or a cache of the wrong shape.
        """
        offset = self._check_inputs(tokens, kv_cache)
        b, t = tokens.shape
        if targets is not None and last_only:
            raise ValidationError("last_only cannot be combined with targets", field="last_only")
        if pool is not None and torch.is_grad_enabled() and self.is_trainable:
            pool = None

        with Scratch(pool) as sc:
            h = sc.take(b, t, self.config.dim)
            if h is None:
                h = self.tok_embeddings(tokens)
            else:
                torch.index_select(self.tok_embeddings.weight, 0, tokens.reshape(-1),
                                   out=h.view(b * t, self.config.dim))
            if self.config.position_encoding == "learned":
                h = _residual(h, self.pos_embeddings.weight[offset:offset + t])
                freqs_cos = freqs_sin = None
            else:
                freqs_cos = self.freqs_cos[offset:offset + t]
                freqs_sin = self.freqs_sin[offset:offset + t]

            try:
                for layer in self.layers:
                    h = layer(h, freqs_cos, freqs_sin, kv_cache, pool)
                if kv_cache is not None:
                    kv_cache.commit()
            except BaseException:
                if kv_cache is not None:
                    kv_cache.rollback()
                raise

            if last_only:
                h = h[:, -1:, :]
            h = self.norm(h, out=sc.take(*h.shape))
            logits = kernels.linear(h, self.output.weight, self.output.bias)

        loss = None
        if targets is not None:
            loss = F.cross_entropy(
                logits.view(-1, logits.size(-1)),
                targets.reshape(-1),
                ignore_index=-1,
            )
        return logits, loss
