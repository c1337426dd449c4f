"""
Convert a full-precision checkpoint into a quantized model file.

USAGE:
    python scripts/quantize_model.py checkpoints/tiny.lrtc models/tiny.lrtq

    # 4-bit with per-block minimums, custom block size
    python scripts/quantize_model.py checkpoints/tiny.lrtc models/tiny.q4.lrtq \
        --kind q4_1 --block-size 32

    # Remember which tokenizer the model was trained with
    python scripts/quantize_model.py checkpoints/tiny.lrtc models/tiny.lrtq \
        --tokenizer data/tokenizer.model

Weight matrices are quantized; norm gains and biases stay F32. After
writing, the file is read back and the largest absolute error per tensor is
reported.
"""

import os
import sys
import argparse
import logging

from tqdm import tqdm

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_rt.checkpoint import load_checkpoint
from llama_rt.errors import LlamaRuntimeError
from llama_rt.model_file import read_model_file, write_model_file
from llama_rt.quantization import QuantKind, quantization_error
from llama_rt.utils import model_summary, setup_logging

logger = logging.getLogger("quantize_model")


def main():
    parser = argparse.ArgumentParser(
        description="Quantize a llama-rt checkpoint",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("checkpoint", type=str, help="Full-precision checkpoint")
    parser.add_argument("output", type=str, help="Quantized model file to write")
    parser.add_argument("--kind", type=str, default="q8_0",
                        help="f32, f16, q8_0, q4_0 or q4_1")
    parser.add_argument("--block-size", type=int, default=None,
                        help="Elements per quantization block (default per kind)")
    parser.add_argument("--tokenizer", type=str, default=None,
                        help="Tokenizer name stored in the file metadata")
    parser.add_argument("--summary", action="store_true", help="Print a parameter summary")
    parser.add_argument("--log-level", type=str, default="INFO")
    args = parser.parse_args()

    setup_logging(None, args.log_level)

    try:
        kind = QuantKind.parse(args.kind)
        model, extra = load_checkpoint(args.checkpoint)
        if args.tokenizer:
            extra = dict(extra, tokenizer=args.tokenizer)
        if args.summary:
            print(model_summary(model))

        size = write_model_file(args.output, model, kind, block_size=args.block_size,
                                extra=extra, progress=True)
        mf = read_model_file(args.output, lazy=True)
    except (LlamaRuntimeError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(1)

    worst_name, worst = None, 0.0
    for name, param in tqdm(list(model.named_parameters()), desc="verifying", unit="tensor"):
        err = quantization_error(param, mf.tensors[name])
        if err >= worst:
            worst_name, worst = name, err

    f32_bytes = sum(p.numel() for p in model.parameters()) * 4
    print(f"Wrote {args.output}: {size / 1024**2:.2f} MB "
          f"({100.0 * size / f32_bytes:.1f}% of f32)")
    print(f"Largest abs error: {worst:.6f} ({worst_name})")


if __name__ == "__main__":
    main()
