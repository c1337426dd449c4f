"""
Unit tests for Rotary Positional Embeddings (RoPE).

Tests verify:
  1. The cos/sin tables follow θᵢ = theta^(-2i/head_dim) row by row
  2. Rotation is an isometry and dot products depend only on distance,
     on both the allocating path and the out= (pooled scratch) path
  3. The out= path writes in place, handles strided views and checks shapes
  4. Rotating one token or one chunk at its absolute position matches
     rotating the whole block, which cached decoding relies on
"""

import sys
import os
import math

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_rt.errors import ShapeMismatchError, ValidationError
from llama_rt.model import precompute_rope_frequencies, apply_rotary_embeddings


def rotate(x, cos, sin, pooled):
    """Rotate through either the allocating path or a preallocated out buffer."""
    if pooled:
        return apply_rotary_embeddings(x, cos, sin, out=torch.empty_like(x))
    return apply_rotary_embeddings(x, cos, sin)


class TestRopeTables:
    def test_closed_form(self):
        head_dim, positions, theta = 16, 40, 10000.0
        cos, sin = precompute_rope_frequencies(head_dim, positions, theta=theta)
        assert cos.shape == sin.shape == (positions, head_dim // 2)
        for m in (0, 1, 7, 39):
            for i in range(head_dim // 2):
                angle = m * theta ** (-2 * i / head_dim)
                assert cos[m, i].item() == pytest.approx(math.cos(angle), abs=1e-4)
                assert sin[m, i].item() == pytest.approx(math.sin(angle), abs=1e-4)

    def test_first_pair_ignores_theta(self):
        """θ₀ = 1 for every base; only the slower pairs move with theta."""
        cos_a, _ = precompute_rope_frequencies(64, 128, theta=10000.0)
        cos_b, _ = precompute_rope_frequencies(64, 128, theta=500000.0)
        assert torch.allclose(cos_a[:, 0], cos_b[:, 0])
        assert not torch.allclose(cos_a[:, 1:], cos_b[:, 1:])

    def test_odd_head_dim_rejected(self):
        with pytest.raises(ValidationError) as info:
            precompute_rope_frequencies(63, 512)
        assert info.value.field == "head_dim"


@pytest.mark.parametrize("pooled", [False, True], ids=["alloc", "out"])
class TestRotation:
    def test_first_pair_by_hand(self, pooled):
        """A unit vector in pair 0 at position m lands on (cos m, sin m)."""
        cos, sin = precompute_rope_frequencies(8, 16)
        x = torch.zeros(1, 16, 1, 8)
        x[..., 0] = 1.0
        out = rotate(x, cos, sin, pooled)
        positions = torch.arange(16).float()
        assert torch.allclose(out[0, :, 0, 0], positions.cos(), atol=1e-5)
        assert torch.allclose(out[0, :, 0, 1], positions.sin(), atol=1e-5)
        assert torch.count_nonzero(out[..., 2:]) == 0

    def test_preserves_norm(self, pooled):
        cos, sin = precompute_rope_frequencies(64, 32)
        x = torch.randn(4, 32, 8, 64)
        out = rotate(x, cos, sin, pooled)
        assert torch.allclose(out.norm(dim=-1), x.norm(dim=-1), atol=1e-4)

    def test_dot_depends_on_distance(self, pooled):
        cos, sin = precompute_rope_frequencies(64, 100)
        q = torch.randn(1, 1, 1, 64)
        k = torch.randn(1, 1, 1, 64)
        dots = []
        for n in (0, 10, 20, 50, 80):
            m = n + 5
            q_rot = rotate(q, cos[m:m + 1], sin[m:m + 1], pooled)
            k_rot = rotate(k, cos[n:n + 1], sin[n:n + 1], pooled)
            dots.append((q_rot * k_rot).sum().item())
        assert max(dots) - min(dots) < 1e-3, dots

    def test_heads_rotated_alike(self, pooled):
        cos, sin = precompute_rope_frequencies(16, 8)
        head = torch.randn(1, 8, 1, 16)
        out = rotate(head.expand(1, 8, 3, 16).contiguous(), cos, sin, pooled)
        for h in range(3):
            assert torch.allclose(out[:, :, h], out[:, :, 0])


class TestDtypes:
    def test_half_input_keeps_dtype(self):
        cos, sin = precompute_rope_frequencies(64, 8)
        x = torch.randn(1, 8, 2, 64)
        out = apply_rotary_embeddings(x.half(), cos, sin)
        assert out.dtype == torch.float16
        assert torch.allclose(out.float(), apply_rotary_embeddings(x, cos, sin), atol=2e-2)


class TestOutBuffer:
    """The out= path used with pooled scratch buffers."""

    def test_writes_into_out(self):
        cos, sin = precompute_rope_frequencies(16, 32)
        x = torch.randn(2, 8, 4, 16)
        out = torch.empty_like(x)
        result = apply_rotary_embeddings(x, cos[:8], sin[:8], out=out)
        assert result.data_ptr() == out.data_ptr()
        assert torch.allclose(out, apply_rotary_embeddings(x, cos[:8], sin[:8]), atol=1e-6)

    def test_strided_input(self):
        """Projections are views; rotation must not assume contiguity."""
        cos, sin = precompute_rope_frequencies(16, 32)
        x = torch.randn(1, 4, 16, 2).transpose(2, 3)
        out = torch.empty(x.shape)
        apply_rotary_embeddings(x, cos[:4], sin[:4], out=out)
        assert torch.allclose(out, apply_rotary_embeddings(x.contiguous(), cos[:4], sin[:4]), atol=1e-6)

    def test_out_shape_mismatch(self):
        cos, sin = precompute_rope_frequencies(16, 32)
        x = torch.randn(1, 4, 2, 16)
        with pytest.raises(ShapeMismatchError):
            apply_rotary_embeddings(x, cos[:4], sin[:4], out=torch.empty(1, 4, 2, 8))

    def test_table_length_mismatch(self):
        """The table slice must cover exactly the tokens being rotated."""
        cos, sin = precompute_rope_frequencies(16, 32)
        with pytest.raises(ShapeMismatchError):
            apply_rotary_embeddings(torch.randn(1, 4, 2, 16), cos[:5], sin[:5])

    def test_rank_checked(self):
        cos, sin = precompute_rope_frequencies(16, 32)
        with pytest.raises(ShapeMismatchError):
            apply_rotary_embeddings(torch.randn(4, 2, 16), cos[:4], sin[:4])


class TestIncremental:
    """Cached decoding rotates each new token at its absolute position."""

    def test_one_token_at_a_time(self):
        cos, sin = precompute_rope_frequencies(32, 64)
        x = torch.randn(1, 10, 2, 32)
        block = apply_rotary_embeddings(x, cos[:10], sin[:10])
        for pos in range(10):
            single = apply_rotary_embeddings(x[:, pos:pos + 1], cos[pos:pos + 1], sin[pos:pos + 1])
            assert torch.allclose(single[:, 0], block[:, pos], atol=1e-6)

    def test_chunk_after_cached_prefix(self):
        cos, sin = precompute_rope_frequencies(32, 64)
        x = torch.randn(2, 10, 2, 32)
        block = apply_rotary_embeddings(x, cos[:10], sin[:10])
        chunk = torch.empty(2, 4, 2, 32)
        apply_rotary_embeddings(x[:, 6:], cos[6:10], sin[6:10], out=chunk)
        assert torch.allclose(chunk, block[:, 6:], atol=1e-6)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
