"""
Full-precision binary checkpoints.

A checkpoint is everything needed to rebuild a model bit-for-bit: the
architecture (ModelConfig) and every parameter as raw float32, in
model.named_parameters() order. Without the config the weights are
useless, so it always travels in the same file.

FILE LAYOUT (little-endian):
  magic        4 bytes  b"LRTC"
  version      u32      1
  reserved     8 bytes
  meta_len     i32
  metadata     UTF-8 JSON {"config": {...}, "extra": {...}}
  param_count  i32
  per parameter:
    name_len   i32
    name       UTF-8
    rank       i32
    dims       rank × i32
    numel      i64
    data       numel × f32

LOADING RULES:
  The whole file is parsed and checked before any parameter is touched.
  Tensor count, names (in order) and element counts must match the target
  model exactly; any disagreement is a FormatError and the target model is
  left unmodified.
"""

import json
import logging
import os
import struct
from typing import Optional, Tuple

import numpy as np
import torch

from llama_rt.config import ModelConfig
from llama_rt.errors import FormatError
from llama_rt.model import Transformer

logger = logging.getLogger(__name__)

MAGIC = b"LRTC"
VERSION = 1
_PREAMBLE = struct.Struct("<4sI8x")
_I32 = struct.Struct("<i")
_I64 = struct.Struct("<q")


def save_checkpoint(model: Transformer, path: str, extra: Optional[dict] = None) -> int:
    """
    Write `model` to `path`. Returns the file size in bytes.

    Args:
        model: Model to save. Tied weights are stored once.
        path: Destination file; parent directories are created.
        extra: Free-form JSON-serializable metadata (tokenizer path, notes).
    """
    meta = json.dumps({"config": model.config.to_dict(), "extra": extra or {}}).encode("utf-8")
    params = list(model.named_parameters())

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(_PREAMBLE.pack(MAGIC, VERSION))
        f.write(_I32.pack(len(meta)))
        f.write(meta)
        f.write(_I32.pack(len(params)))
        for name, param in params:
            raw_name = name.encode("utf-8")
            f.write(_I32.pack(len(raw_name)))
            f.write(raw_name)
            f.write(_I32.pack(param.dim()))
            f.write(struct.pack(f"<{param.dim()}i", *param.shape))
            f.write(_I64.pack(param.numel()))
            f.write(param.detach().to("cpu", torch.float32).contiguous().numpy().astype("<f4").tobytes())
        size = f.tell()

    logger.info("saved checkpoint %s (%d tensors, %.1f MB)", path, len(params), size / 1024**2)
    return size


class _Reader:
    """Bounds-checked sequential reader over a checkpoint file."""

    def __init__(self, f, path: str):
        self.f = f
        self.path = path

    def take(self, n: int, what: str) -> bytes:
        if n < 0:
            raise FormatError(f"negative length for {what}", self.path)
        buf = self.f.read(n)
        if len(buf) != n:
            raise FormatError(f"truncated {what}: expected {n} bytes, got {len(buf)}", self.path)
        return buf

    def i32(self, what: str) -> int:
        return _I32.unpack(self.take(4, what))[0]

    def i64(self, what: str) -> int:
        return _I64.unpack(self.take(8, what))[0]


def _read_header(reader: _Reader) -> dict:
    magic, version = _PREAMBLE.unpack(reader.take(_PREAMBLE.size, "header"))
    if magic != MAGIC:
        raise FormatError(f"bad magic {magic!r}, expected {MAGIC!r}", reader.path)
    if version != VERSION:
        raise FormatError(f"unsupported checkpoint version {version}", reader.path)
    meta_len = reader.i32("metadata length")
    try:
        meta = json.loads(reader.take(meta_len, "metadata").decode("utf-8"))
        if not isinstance(meta, dict) or not isinstance(meta.get("config"), dict) \
                or not isinstance(meta.get("extra", {}), dict):
            raise ValueError("metadata must be a JSON object with a 'config' object")
        ModelConfig.from_dict(meta["config"]).validate()
    except (ValueError, KeyError, TypeError) as exc:
        raise FormatError(f"invalid metadata: {exc}", reader.path) from None
    return meta


def read_checkpoint_metadata(path: str) -> dict:
    """Config and extra metadata without reading any tensor data."""
    with open(path, "rb") as f:
        return _read_header(_Reader(f, str(path)))


def _read_tensors(reader: _Reader) -> list:
    count = reader.i32("parameter count")
    if count < 0:
        raise FormatError(f"negative parameter count {count}", reader.path)
    tensors = []
    for i in range(count):
        try:
            name = reader.take(reader.i32("name length"), "name").decode("utf-8")
        except UnicodeDecodeError:
            raise FormatError(f"parameter {i}: name is not valid UTF-8", reader.path) from None
        rank = reader.i32("rank")
        if not 0 <= rank <= 8:
            raise FormatError(f"parameter {name!r}: invalid rank {rank}", reader.path)
        shape = struct.unpack(f"<{rank}i", reader.take(4 * rank, "dims"))
        numel = reader.i64("element count")
        if numel != int(np.prod(shape, dtype=np.int64)):
            raise FormatError(f"parameter {name!r}: element count {numel} does not match shape {shape}",
                              reader.path)
        data = np.frombuffer(reader.take(4 * numel, f"data of {name!r}"), dtype="<f4")
        tensors.append((name, tuple(shape), data))
    return tensors


def load_checkpoint(path: str, model: Optional[Transformer] = None) -> Tuple[Transformer, dict]:
    """
    Read a checkpoint into `model`, or into a fresh model built from its config.

    Returns:
        (model, extra) with the model in eval mode.

    Raises:
        FormatError: header problems, truncation, or any mismatch between the
            stored tensors and the model's parameters (count, name, size).
    """
    path = str(path)
    with open(path, "rb") as f:
        reader = _Reader(f, path)
        meta = _read_header(reader)
        stored = _read_tensors(reader)

    if model is None:
        model = Transformer(ModelConfig.from_dict(meta["config"]))
    params = list(model.named_parameters())

    if len(stored) != len(params):
        raise FormatError(f"checkpoint has {len(stored)} tensors, model expects {len(params)}", path)
    for (name, shape, data), (pname, param) in zip(stored, params):
        if name != pname:
            raise FormatError(f"tensor order mismatch: checkpoint {name!r}, model {pname!r}", path)
        if data.size != param.numel():
            raise FormatError(
                f"tensor {name!r} has {data.size} elements, model expects {param.numel()}", path
            )
        if shape != tuple(param.shape):
            raise FormatError(f"tensor {name!r} has shape {shape}, model expects {tuple(param.shape)}", path)

    with torch.no_grad():
        for (_, _, data), (_, param) in zip(stored, params):
            param.copy_(torch.from_numpy(data.copy()).view(param.shape))

    model.eval()
    logger.info("loaded checkpoint %s (%d tensors)", path, len(params))
    return model, meta.get("extra", {})
