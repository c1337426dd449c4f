"""
Block quantization: packing float weights into low-bit blocks and back.

QUANTIZATION KINDS (closed set, one codec each):
  ┌──────┬───────┬────────────┬───────────────────────────┬──────────────────┐
  │ Kind │ Value │ Block size │ Data bytes (n elements)   │ Aux per block    │
  ├──────┼───────┼────────────┼───────────────────────────┼──────────────────┤
  │ F32  │ 0     │ -          │ 4n                        │ -                │
  │ F16  │ 1     │ -          │ 2n                        │ -                │
  │ Q8_0 │ 2     │ 64         │ n      (int8)             │ f32 scale        │
  │ Q4_0 │ 3     │ 64         │ ⌈n/2⌉  (signed nibbles)   │ f32 scale        │
  │ Q4_1 │ 4     │ 32         │ ⌈n/2⌉  (unsigned nibbles) │ f32 scale, f32 min│
  └──────┴───────┴────────────┴───────────────────────────┴──────────────────┘

  Blocks are runs of `block_size` consecutive elements of the flattened
  tensor; the last block may be short. Values are never padded in the data
  region. Aux stores all scales first, then (Q4_1 only) all mins.

CODECS:
  Q8_0   scale = max|x| / 127          q = clamp(round(x / scale), -127, 127)
                                       x ≈ q · scale
  Q4_0   scale = max|x| / 7            q = round(clamp(x / scale, -8, 7))
                                       x ≈ q · scale
  Q4_1   scale = (max - min) / 15      q = round(clamp((x - min) / scale, 0, 15))
                                       x ≈ q · scale + min

  A block whose range is zero gets scale 1 so it decodes to exact values.

NIBBLE PACKING:
  Element i lives in byte i // 2: low nibble for even i, high nibble for odd
  i. Q4_0 nibbles are two's-complement (8..15 mean -8..-1).

Dispatch is a table lookup keyed by QuantKind; an unknown tag raises
FormatError instead of falling back to some other precision.
"""

import enum
import logging
from typing import Optional, Tuple

import numpy as np
import torch

from llama_rt.errors import FormatError, ShapeMismatchError, ValidationError
from llama_rt.kernels import checked_numel

logger = logging.getLogger(__name__)


class QuantKind(enum.IntEnum):
    F32 = 0
    F16 = 1
    Q8_0 = 2
    Q4_0 = 3
    Q4_1 = 4

    @property
    def is_quantized(self) -> bool:
        return self not in (QuantKind.F32, QuantKind.F16)

    @property
    def default_block_size(self) -> int:
        return _DEFAULT_BLOCK_SIZE[self]

    @classmethod
    def from_value(cls, value: int) -> "QuantKind":
        try:
            return cls(value)
        except ValueError:
            raise FormatError(f"unknown quantization kind {value}") from None

    @classmethod
    def parse(cls, name: str) -> "QuantKind":
        """Case-insensitive name lookup: 'q8_0', 'Q4_1', 'f16' ..."""
        try:
            return cls[name.strip().upper()]
        except KeyError:
            choices = ", ".join(k.name.lower() for k in cls)
            raise ValidationError(f"unknown quantization kind {name!r} (choose from {choices})",
                                  field="kind") from None


_DEFAULT_BLOCK_SIZE = {
    QuantKind.F32: 0,
    QuantKind.F16: 0,
    QuantKind.Q8_0: 64,
    QuantKind.Q4_0: 64,
    QuantKind.Q4_1: 32,
}


def n_blocks(numel: int, block_size: int) -> int:
    return (numel + block_size - 1) // block_size


def expected_data_bytes(kind: QuantKind, numel: int) -> int:
    """Exact data-region size for `numel` elements of `kind`."""
    kind = QuantKind.from_value(int(kind))
    if kind == QuantKind.F32:
        return 4 * numel
    if kind == QuantKind.F16:
        return 2 * numel
    if kind == QuantKind.Q8_0:
        return numel
    return (numel + 1) // 2


def expected_aux_bytes(kind: QuantKind, numel: int, block_size: int) -> int:
    """Exact aux-region size (scales, and mins for Q4_1)."""
    kind = QuantKind.from_value(int(kind))
    if not kind.is_quantized:
        return 0
    per_block = 8 if kind == QuantKind.Q4_1 else 4
    return per_block * n_blocks(numel, block_size)


def _check_block_size(kind: QuantKind, block_size: int) -> int:
    if not kind.is_quantized:
        return 0
    if block_size <= 0:
        raise ValidationError(f"block_size must be positive for {kind.name}, got {block_size}",
                              field="block_size")
    return block_size


# ═══════════════════════════════════════════════════════════════════════════
# QuantizedTensor
# ═══════════════════════════════════════════════════════════════════════════

class QuantizedTensor:
    """
    One tensor in packed form.

    The numpy arrays may be np.memmap views into a model file, in which case
    nothing is read until a dequantize* method touches the bytes.

    Attributes:
        kind: QuantKind tag.
        shape: Logical shape of the dequantized tensor.
        data: float32 / float16 / int8 / uint8 array (see module table).
        scales: float32 per-block scales (quantized kinds only).
        mins: float32 per-block mins (Q4_1 only).
        block_size: Elements per block (0 for F32/F16).
    """

    def __init__(
        self,
        kind: QuantKind,
        shape: Tuple[int, ...],
        data: np.ndarray,
        scales: Optional[np.ndarray] = None,
        mins: Optional[np.ndarray] = None,
        block_size: Optional[int] = None,
    ):
        kind = QuantKind.from_value(int(kind))
        shape = tuple(int(d) for d in shape)
        numel = checked_numel(shape)
        if block_size is None:
            block_size = kind.default_block_size
        block_size = _check_block_size(kind, block_size)

        want = expected_data_bytes(kind, numel)
        if data.nbytes != want:
            raise FormatError(f"{kind.name} data for shape {shape} must be {want} bytes, got {data.nbytes}")
        if kind.is_quantized:
            nb = n_blocks(numel, block_size)
            if scales is None or scales.shape != (nb,):
                raise FormatError(f"{kind.name} needs {nb} scales, got "
                                  f"{None if scales is None else scales.shape}")
            if kind == QuantKind.Q4_1 and (mins is None or mins.shape != (nb,)):
                raise FormatError(f"Q4_1 needs {nb} mins, got {None if mins is None else mins.shape}")

        self.kind = kind
        self.shape = shape
        self.data = data
        self.scales = scales
        self.mins = mins
        self.block_size = block_size

    @property
    def numel(self) -> int:
        return checked_numel(self.shape)

    @property
    def n_blocks(self) -> int:
        if not self.kind.is_quantized:
            return 0
        return n_blocks(self.numel, self.block_size)

    @property
    def nbytes(self) -> int:
        total = self.data.nbytes
        if self.scales is not None:
            total += self.scales.nbytes
        if self.mins is not None:
            total += self.mins.nbytes
        return total

    def dequantize(self) -> torch.Tensor:
        """Whole tensor as float32, in its logical shape."""
        flat = _DEQUANTIZERS[self.kind](self, 0, self.numel)
        return torch.from_numpy(flat).view(self.shape)

    def dequantize_block(self, index: int) -> torch.Tensor:
        """Elements of block `index` (F32/F16: the whole tensor is block 0)."""
        if not self.kind.is_quantized:
            if index != 0:
                raise ValidationError(f"{self.kind.name} tensors have a single block", field="index")
            return torch.from_numpy(_DEQUANTIZERS[self.kind](self, 0, self.numel))
        if not 0 <= index < self.n_blocks:
            raise ValidationError(f"block {index} out of range [0, {self.n_blocks})", field="index")
        lo = index * self.block_size
        hi = min(lo + self.block_size, self.numel)
        return torch.from_numpy(_DEQUANTIZERS[self.kind](self, lo, hi))

    def dequantize_rows(self, start: int, stop: int) -> torch.Tensor:
        """Rows [start, stop) of a 2-D tensor, e.g. embedding lookups."""
        if len(self.shape) != 2:
            raise ShapeMismatchError("dequantize_rows", ("rows", "cols"), self.shape)
        rows, cols = self.shape
        if not 0 <= start <= stop <= rows:
            raise ValidationError(f"row range [{start}, {stop}) outside [0, {rows})", field="rows")
        flat = _DEQUANTIZERS[self.kind](self, start * cols, stop * cols)
        return torch.from_numpy(flat).view(stop - start, cols)

    def __repr__(self) -> str:
        return (f"QuantizedTensor(kind={self.kind.name}, shape={self.shape}, "
                f"block_size={self.block_size}, nbytes={self.nbytes})")


# ═══════════════════════════════════════════════════════════════════════════
# Dequantizers: (tensor, lo, hi) → float32 array of elements [lo, hi)
# ═══════════════════════════════════════════════════════════════════════════

def _block_ids(qt: QuantizedTensor, lo: int, hi: int) -> np.ndarray:
    return np.arange(lo, hi, dtype=np.int64) // qt.block_size


def _unpack_nibbles(packed: np.ndarray, lo: int, hi: int) -> np.ndarray:
    """Nibbles for elements [lo, hi) as uint8 values 0..15."""
    raw = np.asarray(packed[lo // 2:(hi + 1) // 2], dtype=np.uint8)
    nib = np.empty(raw.size * 2, dtype=np.uint8)
    nib[0::2] = raw & 0x0F
    nib[1::2] = raw >> 4
    start = lo % 2
    return nib[start:start + (hi - lo)]


def _dequant_f32(qt: QuantizedTensor, lo: int, hi: int) -> np.ndarray:
    return np.array(qt.data[lo:hi], dtype=np.float32)


def _dequant_f16(qt: QuantizedTensor, lo: int, hi: int) -> np.ndarray:
    return np.asarray(qt.data[lo:hi]).astype(np.float32)


def _dequant_q8_0(qt: QuantizedTensor, lo: int, hi: int) -> np.ndarray:
    q = np.asarray(qt.data[lo:hi]).astype(np.float32)
    return q * np.asarray(qt.scales)[_block_ids(qt, lo, hi)]


def _dequant_q4_0(qt: QuantizedTensor, lo: int, hi: int) -> np.ndarray:
    q = _unpack_nibbles(qt.data, lo, hi).astype(np.int8)
    q[q >= 8] -= 16
    return q.astype(np.float32) * np.asarray(qt.scales)[_block_ids(qt, lo, hi)]


def _dequant_q4_1(qt: QuantizedTensor, lo: int, hi: int) -> np.ndarray:
    q = _unpack_nibbles(qt.data, lo, hi).astype(np.float32)
    ids = _block_ids(qt, lo, hi)
    return q * np.asarray(qt.scales)[ids] + np.asarray(qt.mins)[ids]


_DEQUANTIZERS = {
    QuantKind.F32: _dequant_f32,
    QuantKind.F16: _dequant_f16,
    QuantKind.Q8_0: _dequant_q8_0,
    QuantKind.Q4_0: _dequant_q4_0,
    QuantKind.Q4_1: _dequant_q4_1,
}


# ═══════════════════════════════════════════════════════════════════════════
# Quantizers: flat float32 array → QuantizedTensor
# ═══════════════════════════════════════════════════════════════════════════

def _blocks(x: np.ndarray, block_size: int) -> np.ndarray:
    """(n_blocks, block_size) view of x; the short last block is edge-padded,
    which leaves its min, max and max|x| unchanged."""
    nb = n_blocks(x.size, block_size)
    pad = nb * block_size - x.size
    if pad:
        x = np.pad(x, (0, pad), mode="edge")
    return x.reshape(nb, block_size)


def _pack_nibbles(nibbles: np.ndarray) -> np.ndarray:
    if nibbles.size % 2:
        nibbles = np.append(nibbles, np.uint8(0))
    return (nibbles[0::2] | (nibbles[1::2] << 4)).astype(np.uint8)


def _quant_f32(x, shape, block_size):
    return QuantizedTensor(QuantKind.F32, shape, x.astype(np.float32))


def _quant_f16(x, shape, block_size):
    return QuantizedTensor(QuantKind.F16, shape, x.astype(np.float16))


def _quant_q8_0(x, shape, block_size):
    blocks = _blocks(x, block_size)
    max_abs = np.abs(blocks).max(axis=1)
    scales = np.where(max_abs > 0, max_abs / 127.0, 1.0).astype(np.float32)
    q = np.clip(np.rint(blocks * (1.0 / scales)[:, None]), -127, 127).astype(np.int8)
    return QuantizedTensor(QuantKind.Q8_0, shape, q.reshape(-1)[:x.size].copy(), scales,
                           block_size=block_size)


def _quant_q4_0(x, shape, block_size):
    blocks = _blocks(x, block_size)
    max_abs = np.abs(blocks).max(axis=1)
    scales = np.where(max_abs > 0, max_abs / 7.0, 1.0).astype(np.float32)
    q = np.rint(np.clip(blocks * (1.0 / scales)[:, None], -8, 7)).astype(np.int8)
    nibbles = q.reshape(-1)[:x.size].view(np.uint8) & 0x0F
    return QuantizedTensor(QuantKind.Q4_0, shape, _pack_nibbles(nibbles), scales,
                           block_size=block_size)


def _quant_q4_1(x, shape, block_size):
    blocks = _blocks(x, block_size)
    mins = blocks.min(axis=1).astype(np.float32)
    span = blocks.max(axis=1) - mins
    scales = np.where(span > 0, span / 15.0, 1.0).astype(np.float32)
    q = np.rint(np.clip((blocks - mins[:, None]) * (1.0 / scales)[:, None], 0, 15)).astype(np.uint8)
    return QuantizedTensor(QuantKind.Q4_1, shape, _pack_nibbles(q.reshape(-1)[:x.size]), scales,
                           mins, block_size=block_size)


_QUANTIZERS = {
    QuantKind.F32: _quant_f32,
    QuantKind.F16: _quant_f16,
    QuantKind.Q8_0: _quant_q8_0,
    QuantKind.Q4_0: _quant_q4_0,
    QuantKind.Q4_1: _quant_q4_1,
}


def quantize(tensor: torch.Tensor, kind: QuantKind, block_size: Optional[int] = None) -> QuantizedTensor:
    """
    Pack a float tensor as `kind`.

    Args:
        tensor: Any float tensor; it is flattened in row-major order.
        kind: Target QuantKind.
        block_size: Override the kind's default block size.

    Returns:
        QuantizedTensor with the tensor's shape.
    """
    kind = QuantKind.from_value(int(kind))
    shape = tuple(tensor.shape)
    checked_numel(shape)
    if block_size is None:
        block_size = kind.default_block_size
    block_size = _check_block_size(kind, block_size)
    x = tensor.detach().to("cpu", torch.float32).contiguous().numpy().reshape(-1)
    return _QUANTIZERS[kind](x, shape, block_size)


def quantization_error(tensor: torch.Tensor, qt: QuantizedTensor) -> float:
    """Max absolute difference between a tensor and its packed form."""
    return float((tensor.detach().float().cpu() - qt.dequantize()).abs().max())
