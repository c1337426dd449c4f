"""
Quantized model file: a single binary container with config + packed tensors.

FILE LAYOUT (all integers little-endian):

  Offset  Size   Field
  ──────  ─────  ──────────────────────────────────────────────────────────
  0       8      magic  b"LRTQUANT"
  8       4      u32 format version (1)
  12      4      u32 header size (32)
  16      4      u32 tensor count N
  20      4      u32 metadata length M
  24      8      u64 reserved (0)
  32      M      UTF-8 JSON metadata: {"config": {...}, "extra": {...}}
  32+M    156·N  tensor directory, one fixed-size entry per tensor
  ...            data region: per tensor, packed data then aux (scales,
                 then mins for Q4_1), each 32-byte aligned

  Directory entry (156 bytes):
    name      64 bytes, UTF-8, NUL padded
    kind      u32 QuantKind
    rank      i32 (1..8)
    dims      8 × i32 (unused dims are 0)
    block     u32 block size (0 for F32/F16)
    data_off  u64 absolute offset of packed data
    data_len  u64
    aux_off   u64 absolute offset of scales/mins
    aux_len   u64
    reserved  16 bytes

The metadata "config" object is a ModelConfig dict: vocabulary size,
embedding width, head and layer counts, context size, rope_theta, and the
special token ids (bos_id, eos_id, add_bos) the session layer uses to
auto-prepend BOS.

VALIDATION (every failure is a FormatError; nothing is returned until the
whole directory has been checked):
  - magic, version, header size, JSON metadata, config validity
  - rank bounds, positive dims, 32-bit element count, unique names
  - kind is a known QuantKind, quantized kinds have a positive block size
  - data_len == expected_data_bytes(kind, numel)
  - aux_len  == expected_aux_bytes(kind, numel, block)
  - every region lies inside the file
  - vocabulary tensors (tok_embeddings.weight, output.weight) have
    vocab_size rows and dim columns

LAZY LOADING:
  read_model_file(path, lazy=True) maps the file with np.memmap. Each
  QuantizedTensor then holds views into the mapping and dequantizes on
  access (whole tensor, one block, or a row range).
"""

import json
import logging
import os
import struct
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np
import torch
from tqdm import tqdm

from llama_rt.checkpoint import MAGIC as CHECKPOINT_MAGIC, load_checkpoint
from llama_rt.config import ModelConfig
from llama_rt.errors import FormatError, ValidationError
from llama_rt.kernels import checked_numel
from llama_rt.model import Transformer
from llama_rt.quantization import (
    QuantKind,
    QuantizedTensor,
    expected_aux_bytes,
    expected_data_bytes,
    n_blocks,
    quantize,
)

logger = logging.getLogger(__name__)

MAGIC = b"LRTQUANT"
VERSION = 1
HEADER = struct.Struct("<8sIIIIQ")
ENTRY = struct.Struct("<64sIi8iIQQQQ16x")
MAX_RANK = 8
NAME_BYTES = 64
ALIGNMENT = 32

VOCAB_TENSORS = ("tok_embeddings.weight", "output.weight")

_DATA_DTYPES = {
    QuantKind.F32: np.float32,
    QuantKind.F16: np.float16,
    QuantKind.Q8_0: np.int8,
    QuantKind.Q4_0: np.uint8,
    QuantKind.Q4_1: np.uint8,
}


def _align(offset: int) -> int:
    return (offset + ALIGNMENT - 1) // ALIGNMENT * ALIGNMENT


@dataclass
class ModelFile:
    """Parsed model file: config, packed tensors and free-form metadata."""

    config: ModelConfig
    tensors: Dict[str, QuantizedTensor]
    path: str = ""
    extra: dict = field(default_factory=dict)
    version: int = VERSION

    @property
    def special_tokens(self) -> dict:
        return {
            "bos_id": self.config.bos_id,
            "eos_id": self.config.eos_id,
            "add_bos": self.config.add_bos,
        }

    def tensor(self, name: str) -> torch.Tensor:
        """Dequantize one tensor by name."""
        if name not in self.tensors:
            raise KeyError(name)
        return self.tensors[name].dequantize()

    @property
    def nbytes(self) -> int:
        return sum(t.nbytes for t in self.tensors.values())


# ═══════════════════════════════════════════════════════════════════════════
# Writing
# ═══════════════════════════════════════════════════════════════════════════

def write_tensors(
    path: str,
    config: ModelConfig,
    tensors: Dict[str, QuantizedTensor],
    extra: Optional[dict] = None,
    progress: bool = False,
) -> int:
    """
    Write already-packed tensors to `path`. Returns the file size in bytes.

    Tensor order in the file follows the dict's insertion order.
    """
    config.validate()
    meta = json.dumps({"config": config.to_dict(), "extra": extra or {}}).encode("utf-8")

    names = list(tensors)
    for name in names:
        if len(name.encode("utf-8")) > NAME_BYTES:
            raise ValidationError(f"tensor name longer than {NAME_BYTES} bytes: {name!r}", field="name")
        if len(tensors[name].shape) > MAX_RANK:
            raise ValidationError(f"tensor {name!r} has rank > {MAX_RANK}", field="shape")

    # Lay out the data region.
    offset = _align(HEADER.size + len(meta) + ENTRY.size * len(names))
    layout = []
    for name in names:
        qt = tensors[name]
        data_off = offset
        data_len = qt.data.nbytes
        offset = _align(data_off + data_len)
        aux_len = expected_aux_bytes(qt.kind, qt.numel, qt.block_size)
        aux_off = offset if aux_len else 0
        if aux_len:
            offset = _align(aux_off + aux_len)
        layout.append((data_off, data_len, aux_off, aux_len))

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(HEADER.pack(MAGIC, VERSION, HEADER.size, len(names), len(meta), 0))
        f.write(meta)
        for name, (data_off, data_len, aux_off, aux_len) in zip(names, layout):
            qt = tensors[name]
            dims = list(qt.shape) + [0] * (MAX_RANK - len(qt.shape))
            f.write(ENTRY.pack(
                name.encode("utf-8"), int(qt.kind), len(qt.shape), *dims, qt.block_size,
                data_off, data_len, aux_off, aux_len,
            ))
        for name, (data_off, _, aux_off, aux_len) in tqdm(
            list(zip(names, layout)), desc="writing", unit="tensor", disable=not progress
        ):
            qt = tensors[name]
            f.write(b"\x00" * (data_off - f.tell()))
            f.write(np.ascontiguousarray(qt.data).tobytes())
            if aux_len:
                f.write(b"\x00" * (aux_off - f.tell()))
                f.write(np.ascontiguousarray(qt.scales, dtype=np.float32).tobytes())
                if qt.kind == QuantKind.Q4_1:
                    f.write(np.ascontiguousarray(qt.mins, dtype=np.float32).tobytes())
        size = f.tell()

    logger.info("wrote %s: %d tensors, %.1f MB", path, len(names), size / 1024**2)
    return size


def write_model_file(
    path: str,
    model: Transformer,
    kind: QuantKind = QuantKind.Q8_0,
    block_size: Optional[int] = None,
    extra: Optional[dict] = None,
    progress: bool = False,
) -> int:
    """
    Quantize a model's parameters and write them to `path`.

    Weight matrices (rank >= 2) are packed as `kind`; vectors (norm gains,
    biases) stay F32 since they are tiny and precision-sensitive.
    Tied weights are written once.
    """
    kind = QuantKind.from_value(int(kind))
    tensors = {}
    params = list(model.named_parameters())
    for name, param in tqdm(params, desc=f"quantizing ({kind.name})", unit="tensor",
                            disable=not progress):
        tensor_kind = kind if param.dim() >= 2 else QuantKind.F32
        tensors[name] = quantize(param, tensor_kind, block_size if tensor_kind.is_quantized else None)
    return write_tensors(path, model.config, tensors, extra=extra, progress=progress)


# ═══════════════════════════════════════════════════════════════════════════
# Reading
# ═══════════════════════════════════════════════════════════════════════════

def _read_exact(f, n: int, what: str, path: str) -> bytes:
    buf = f.read(n)
    if len(buf) != n:
        raise FormatError(f"truncated {what}: expected {n} bytes, got {len(buf)}", path)
    return buf


def _parse_entry(raw: bytes, file_size: int, path: str) -> dict:
    (name_raw, kind_value, rank, *rest) = ENTRY.unpack(raw)
    dims = rest[:MAX_RANK]
    block, data_off, data_len, aux_off, aux_len = rest[MAX_RANK:]

    try:
        name = name_raw.rstrip(b"\x00").decode("utf-8")
    except UnicodeDecodeError:
        raise FormatError("tensor name is not valid UTF-8", path) from None
    if not name:
        raise FormatError("empty tensor name", path)
    kind = QuantKind.from_value(kind_value)
    if not 1 <= rank <= MAX_RANK:
        raise FormatError(f"tensor {name!r}: rank {rank} outside [1, {MAX_RANK}]", path)
    shape = tuple(dims[:rank])
    try:
        numel = checked_numel(shape)
    except ValidationError as exc:
        raise FormatError(f"tensor {name!r}: {exc}", path) from None
    if kind.is_quantized and block <= 0:
        raise FormatError(f"tensor {name!r}: {kind.name} needs a positive block size", path)

    want = expected_data_bytes(kind, numel)
    if data_len != want:
        raise FormatError(
            f"tensor {name!r}: {kind.name} {shape} needs {want} data bytes, header declares {data_len}",
            path,
        )
    want_aux = expected_aux_bytes(kind, numel, block)
    if aux_len != want_aux:
        raise FormatError(
            f"tensor {name!r}: {kind.name} {shape} needs {want_aux} scale bytes, header declares {aux_len}",
            path,
        )
    if data_off + data_len > file_size or (aux_len and aux_off + aux_len > file_size):
        raise FormatError(f"tensor {name!r}: data region extends past end of file", path)

    return dict(name=name, kind=kind, shape=shape, numel=numel, block=block if kind.is_quantized else 0,
                data_off=data_off, data_len=data_len, aux_off=aux_off, aux_len=aux_len)


def _check_vocab_tensors(config: ModelConfig, entries: list, path: str) -> None:
    for e in entries:
        if e["name"] in VOCAB_TENSORS:
            expected = (config.vocab_size, config.dim)
            if e["shape"] != expected:
                raise FormatError(
                    f"tensor {e['name']!r} has shape {e['shape']}, vocabulary header needs {expected}",
                    path,
                )


def read_model_file(path: str, lazy: bool = False) -> ModelFile:
    """
    Parse and validate a model file.

    Args:
        path: File to read.
        lazy: Keep tensor payloads memory-mapped and dequantize on access.

    Raises:
        FormatError: any header or tensor-size inconsistency.
        FileNotFoundError: the file does not exist.
    """
    path = str(path)
    file_size = os.path.getsize(path)
    with open(path, "rb") as f:
        magic, version, header_size, count, meta_len, _ = HEADER.unpack(
            _read_exact(f, HEADER.size, "header", path)
        )
        if magic != MAGIC:
            raise FormatError(f"bad magic {magic!r}, expected {MAGIC!r}", path)
        if version != VERSION:
            raise FormatError(f"unsupported format version {version}", path)
        if header_size != HEADER.size:
            raise FormatError(f"header size {header_size}, expected {HEADER.size}", path)
        if HEADER.size + meta_len + ENTRY.size * count > file_size:
            raise FormatError("metadata/directory extends past end of file", path)

        try:
            meta = json.loads(_read_exact(f, meta_len, "metadata", path).decode("utf-8"))
            if not isinstance(meta, dict) or not isinstance(meta.get("config"), dict) \
                    or not isinstance(meta.get("extra", {}), dict):
                raise ValueError("metadata must be a JSON object with a 'config' object")
            config = ModelConfig.from_dict(meta["config"])
            config.validate()
        except (ValueError, KeyError, TypeError) as exc:
            # ValidationError is a ValueError; JSON errors are too.
            raise FormatError(f"invalid metadata: {exc}", path) from None

        entries = []
        seen = set()
        for _ in range(count):
            entry = _parse_entry(_read_exact(f, ENTRY.size, "tensor directory", path), file_size, path)
            if entry["name"] in seen:
                raise FormatError(f"duplicate tensor {entry['name']!r}", path)
            seen.add(entry["name"])
            entries.append(entry)
        _check_vocab_tensors(config, entries, path)

        if lazy:
            mapped = np.memmap(path, dtype=np.uint8, mode="r") if entries else None

            def region(off, length):
                return mapped[off:off + length]
        else:
            def region(off, length):
                f.seek(off)
                return np.frombuffer(_read_exact(f, length, "tensor data", path), dtype=np.uint8)

        tensors = {}
        for e in entries:
            data = region(e["data_off"], e["data_len"]).view(_DATA_DTYPES[e["kind"]])
            scales = mins = None
            if e["kind"].is_quantized:
                nb = n_blocks(e["numel"], e["block"])
                aux = region(e["aux_off"], e["aux_len"]).view(np.float32)
                scales = aux[:nb]
                if e["kind"] == QuantKind.Q4_1:
                    mins = aux[nb:2 * nb]
            tensors[e["name"]] = QuantizedTensor(
                e["kind"], e["shape"], data, scales, mins, block_size=e["block"] or None
            )

    logger.info("read %s: %d tensors (%s)", path, len(tensors), "lazy" if lazy else "materialized")
    return ModelFile(config=config, tensors=tensors, path=path, extra=meta.get("extra", {}),
                     version=version)


def load_model(
    path: str,
    lazy: bool = True,
    strict: bool = True,
    progress: bool = False,
) -> Transformer:
    """
    Build a Transformer from a model file and fill it with dequantized weights.

    With lazy=True (the default) each tensor is dequantized straight from the
    memory map into its parameter, so the packed and float copies of the
    whole model never coexist in memory.

    Args:
        path: Model file.
        lazy: Stream tensors from a memory map.
        strict: Missing or unexpected tensors are a FormatError. When False
                they are logged and missing parameters keep their init.
        progress: Show a tqdm bar.

    Returns:
        The model in eval mode. Nothing is returned if any check fails.
    """
    mf = read_model_file(path, lazy=lazy)
    model = Transformer(mf.config)
    params = dict(model.named_parameters())

    missing = [n for n in params if n not in mf.tensors]
    unexpected = [n for n in mf.tensors if n not in params]
    if missing or unexpected:
        msg = f"parameter mismatch: missing={missing} unexpected={unexpected}"
        if strict:
            raise FormatError(msg, path)
        logger.warning("%s: %s", path, msg)

    with torch.no_grad():
        for name in tqdm([n for n in params if n in mf.tensors], desc="loading", unit="tensor",
                         disable=not progress):
            qt = mf.tensors[name]
            param = params[name]
            if tuple(qt.shape) != tuple(param.shape):
                raise FormatError(
                    f"tensor {name!r} has shape {qt.shape}, model expects {tuple(param.shape)}", path
                )
            param.copy_(qt.dequantize())

    model.eval()
    logger.info("loaded model from %s: %d parameters", path, model.num_parameters())
    return model


def load_any(path: str, lazy: bool = True, progress: bool = False) -> Tuple[Transformer, dict]:
    """
    Load a quantized model file or a full-precision checkpoint, by magic.

    Returns:
        (model, extra metadata), model in eval mode.
    """
    with open(path, "rb") as f:
        head = f.read(len(MAGIC))
    if head == MAGIC:
        model = load_model(path, lazy=lazy, progress=progress)
        return model, read_model_file(path, lazy=True).extra
    if head[:len(CHECKPOINT_MAGIC)] == CHECKPOINT_MAGIC:
        return load_checkpoint(path)
    raise FormatError(f"unrecognized file magic {head!r}", path)
