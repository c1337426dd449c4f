"""
Device selection and CPU thread configuration.

Inference runs wherever the weights live. The runtime is tuned for CPU, where
the one knob that matters is the intra-op thread count torch uses to split
large matrix multiplies; small decode-step matmuls run single-threaded inside
torch regardless.

SUPPORTED DEVICES (auto-detected in this order):
  1. CUDA
  2. MPS (Apple Silicon)
  3. CPU
"""

import logging
import os
from typing import Optional

import torch

from llama_rt import kernels
from llama_rt.errors import ValidationError

logger = logging.getLogger(__name__)


def get_device(requested: Optional[str] = None) -> torch.device:
    """
    Resolve a device string, or auto-detect the best available device.

    Args:
        requested: "cpu", "cuda", "cuda:1", "mps", or None / "auto".

    Raises:
        ValidationError: the requested backend is not available.
    """
    if requested and requested != "auto":
        device = torch.device(requested)
        if device.type == "cuda" and not torch.cuda.is_available():
            raise ValidationError("CUDA requested but not available", field="device")
        if device.type == "mps" and not (hasattr(torch.backends, "mps") and torch.backends.mps.is_available()):
            raise ValidationError("MPS requested but not available", field="device")
        return device
    if torch.cuda.is_available():
        return torch.device("cuda")
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def configure_threads(num_threads: int = 0) -> int:
    """
    Set torch's intra-op thread count. 0 uses every available core.

    Returns:
        The thread count now in effect.
    """
    if num_threads < 0:
        raise ValidationError(f"num_threads must be >= 0, got {num_threads}", field="num_threads")
    if num_threads == 0:
        num_threads = len(os.sched_getaffinity(0)) if hasattr(os, "sched_getaffinity") else (os.cpu_count() or 1)
    kernels.set_num_threads(num_threads)
    logger.debug("torch intra-op threads: %d", num_threads)
    return kernels.get_num_threads()


def device_info(device: torch.device) -> str:
    """Human-readable description of the device, printed once at startup."""
    lines = [f"Device: {device}"]

    if device.type == "cuda":
        props = torch.cuda.get_device_properties(device)
        lines.append(f"  GPU: {props.name}")
        lines.append(f"  VRAM: {props.total_memory / 1024**3:.1f} GB")
        lines.append(f"  Compute Capability: {props.major}.{props.minor}")
        lines.append(f"  CUDA Version: {torch.version.cuda}")
    elif device.type == "mps":
        lines.append("  Backend: Metal Performance Shaders (Apple Silicon)")
    else:
        lines.append("  Backend: CPU")
        lines.append(f"  Threads: {kernels.get_num_threads()}")

    lines.append(f"  PyTorch Version: {torch.__version__}")
    return "\n".join(lines)
