"""
Cross-cutting helpers: seeding, model diagnostics, timing and logging setup.

The library itself never touches logging configuration; scripts call
setup_logging() once at startup.
"""

import logging
import os
import random
import time
from datetime import datetime
from typing import Optional

import numpy as np
import torch
import torch.nn as nn


# ═══════════════════════════════════════════════════════════════════════════
# REPRODUCIBILITY
# ═══════════════════════════════════════════════════════════════════════════

def set_seed(seed: int) -> None:
    """
    Seed Python, NumPy and torch's global generators.

    Sessions never draw from these (each owns a torch.Generator), so this
    only matters for weight initialization of fresh models and for tests.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


# ═══════════════════════════════════════════════════════════════════════════
# MODEL DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

def count_parameters(model: nn.Module, trainable_only: bool = False) -> int:
    """
    Count the parameters in a model. Tied weights are counted once.

    Args:
        model: The PyTorch model.
        trainable_only: Count only parameters with requires_grad=True
                        (an eval-mode Transformer has none).
    """
    if trainable_only:
        return sum(p.numel() for p in model.parameters() if p.requires_grad)
    return sum(p.numel() for p in model.parameters())


def model_summary(model: nn.Module) -> str:
    """
    Per-parameter breakdown with memory estimates per storage format.

    Example output:
      =================================================================
      Model Parameter Summary
      =================================================================
      Name                                           Params       %
      -----------------------------------------------------------------
        tok_embeddings.weight                     1,572,864 ( 10.0%)
        layers.0.attention.wq.weight                147,456 (  0.9%)
        ...
      -----------------------------------------------------------------
        TOTAL                                    15,735,168
        Memory (f32)                                   60.0 MB
        Memory (q8_0, approx)                          15.9 MB
    """
    lines = []
    param_list = list(model.named_parameters())
    total = sum(p.numel() for _, p in param_list)

    lines.append("=" * 65)
    lines.append("Model Parameter Summary")
    lines.append("=" * 65)
    lines.append(f"{'Name':<40} {'Params':>12} {'%':>7}")
    lines.append("-" * 65)
    for name, param in param_list:
        n = param.numel()
        pct = 100.0 * n / total if total > 0 else 0
        lines.append(f"  {name:<38} {n:>12,d} ({pct:>5.1f}%)")
    lines.append("-" * 65)
    lines.append(f"  {'TOTAL':<38} {total:>12,d}")

    # q8_0: one byte per weight plus a 4-byte scale per 64-element block.
    # q4_0: half a byte per weight plus a 4-byte scale per 64-element block.
    lines.append(f"  {'Memory (f32)':<38} {total * 4 / 1024**2:>10.1f} MB")
    lines.append(f"  {'Memory (f16)':<38} {total * 2 / 1024**2:>10.1f} MB")
    lines.append(f"  {'Memory (q8_0, approx)':<38} {total * (1 + 4 / 64) / 1024**2:>10.1f} MB")
    lines.append(f"  {'Memory (q4_0, approx)':<38} {total * (0.5 + 4 / 64) / 1024**2:>10.1f} MB")
    lines.append("=" * 65)
    return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Context manager for timing code blocks.

    Usage:
        with Timer("prefill") as t:
            model(tokens)
        print(t)  # "prefill: 23.4 ms"

    On CUDA, kernels are asynchronous; the timer synchronizes on entry and
    exit so `elapsed` covers the GPU work too.
    """

    def __init__(self, name: str = "Block", device: Optional[torch.device] = None):
        self.name = name
        self.device = device
        self.elapsed: float = 0.0

    def __enter__(self):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.elapsed = time.perf_counter() - self.start

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000

    def __str__(self):
        return f"{self.name}: {self.elapsed_ms:.1f} ms"


# ═══════════════════════════════════════════════════════════════════════════
# LOGGING
# ═══════════════════════════════════════════════════════════════════════════

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(log_dir: Optional[str] = None, level: str = "INFO") -> Optional[str]:
    """
    Configure the root logger for a script: console plus optional log file.

    Args:
        log_dir: Directory for a timestamped `llama_rt_YYYYmmdd_HHMMSS.log`.
                 None logs to the console only.
        level: Logging level name.

    Returns:
        Path of the log file, or None.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S")
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    log_path = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_path = os.path.join(log_dir, f"llama_rt_{timestamp}.log")
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)
        root.info("logging to %s", log_path)
    return log_path
