"""
Text generation CLI.

USAGE:
    # Single prompt
    python scripts/generate_text.py models/tiny.lrtq "Once upon a time"

    # Streamed output, fixed seed
    python scripts/generate_text.py models/tiny.lrtq "Once upon a time" \
        --stream --seed 42

    # Interactive mode (type prompts, get completions)
    python scripts/generate_text.py checkpoints/tiny.lrtc --interactive

    # Greedy decoding with a wall-clock budget
    python scripts/generate_text.py models/tiny.lrtq "The cat" \
        --temperature 0 --max-time-ms 500

The model path may be a quantized model file or a full-precision
checkpoint; the format is detected from the file's magic bytes. The
tokenizer comes from --tokenizer, or from the "tokenizer" entry in the
file's metadata, or falls back to the byte tokenizer.
"""

import os
import sys
import argparse
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_rt.config import EngineConfig, InferenceOptions
from llama_rt.device import configure_threads, device_info
from llama_rt.engine import InferenceEngine
from llama_rt.errors import LlamaRuntimeError
from llama_rt.model_file import load_any
from llama_rt.tokenizer import TokenizerKind, load_tokenizer
from llama_rt.utils import count_parameters, setup_logging

logger = logging.getLogger("generate_text")


def build_tokenizer(name, extra: dict):
    """
    --tokenizer accepts "byte", "sentencepiece:<path>" or a bare .model path.
    """
    name = name or extra.get("tokenizer") or "byte"
    if name == TokenizerKind.BYTE.value:
        return load_tokenizer(TokenizerKind.BYTE)
    if name.startswith(TokenizerKind.SENTENCEPIECE.value + ":"):
        name = name.split(":", 1)[1]
    return load_tokenizer(TokenizerKind.SENTENCEPIECE, name)


def run_once(engine: InferenceEngine, prompt: str, options: InferenceOptions, stream: bool) -> int:
    if stream:
        tokens = engine.stream(prompt, options)
        last = None
        for tok in tokens:
            print(tok.text, end="", flush=True)
            last = tok
        print()
        if last is not None:
            m = last.metrics
            print(f"\n--- {m.generated_tokens} tokens, TTFT {m.ttft_ms:.1f} ms, "
                  f"{m.tokens_per_second:.1f} tok/s ---")
        return 0

    result = engine.generate(prompt, options)
    print(f"\n{result.text}\n")
    print(result.stats_string())
    if result.error is not None and not result.partial:
        return 1
    return 0


def interactive_loop(engine: InferenceEngine, options: InferenceOptions, stream: bool) -> None:
    print("\n" + "=" * 60)
    print("Interactive Text Generation")
    print("=" * 60)
    print(f"Temperature: {options.temperature}")
    print(f"Top-k: {options.top_k}")
    print(f"Top-p: {options.top_p}")
    print(f"Max new tokens: {options.max_new_tokens}")
    print("\nType a prompt and press Enter. Type 'quit' to exit.")
    print("Type 'settings' to see the generation parameters.")
    print("=" * 60 + "\n")

    while True:
        try:
            prompt = input(">>> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye!")
            break

        if not prompt:
            continue
        if prompt.lower() == "quit":
            print("Goodbye!")
            break
        if prompt.lower() == "settings":
            for key, value in options.to_dict().items():
                print(f"  {key}: {value}")
            continue

        try:
            run_once(engine, prompt, options, stream)
        except LlamaRuntimeError as exc:
            print(f"error: {exc}")


def main():
    parser = argparse.ArgumentParser(
        description="Generate text with a llama-rt model",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("model", type=str, help="Quantized model file or checkpoint")
    parser.add_argument("prompt", type=str, nargs="?", default=None,
                        help="Prompt (omit with --interactive)")
    parser.add_argument("--max-new-tokens", type=int, default=200)
    parser.add_argument("--max-input-tokens", type=int, default=2048)
    parser.add_argument("--max-context-tokens", type=int, default=4096)
    parser.add_argument("--max-time-ms", type=int, default=0, help="Wall-clock budget (0 = none)")
    parser.add_argument("--truncate-input", action="store_true",
                        help="Keep the first --max-input-tokens tokens instead of rejecting")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--temperature", type=float, default=0.8,
                        help="Sampling temperature (0=greedy, 1=default, >1=more random)")
    parser.add_argument("--top-k", type=int, default=40, help="Top-k sampling (0=disabled)")
    parser.add_argument("--top-p", type=float, default=0.95, help="Nucleus sampling threshold")
    parser.add_argument("--tokenizer", type=str, default=None,
                        help='"byte", "sentencepiece:<path>" or a .model path')
    parser.add_argument("--threads", type=int, default=0, help="torch threads (0 = all cores)")
    parser.add_argument("--stream", action="store_true", help="Print tokens as they are produced")
    parser.add_argument("--interactive", action="store_true")
    parser.add_argument("--log-level", type=str, default="WARNING")
    parser.add_argument("--log-dir", type=str, default=None)
    args = parser.parse_args()

    setup_logging(args.log_dir, args.log_level)
    if args.prompt is None and not args.interactive:
        parser.error("a prompt is required unless --interactive is given")

    try:
        options = InferenceOptions(
            max_input_tokens=args.max_input_tokens,
            max_context_tokens=args.max_context_tokens,
            max_new_tokens=args.max_new_tokens,
            max_time_ms=args.max_time_ms,
            temperature=args.temperature,
            top_k=args.top_k,
            top_p=args.top_p,
            seed=args.seed,
            truncate_input=args.truncate_input,
        )
        configure_threads(args.threads)
        model, extra = load_any(args.model)
        tokenizer = build_tokenizer(args.tokenizer, extra)
    except (LlamaRuntimeError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)

    device = model.tok_embeddings.weight.device
    print(device_info(device))
    print(f"Parameters: {count_parameters(model):,}")
    print(f"Tokenizer: {tokenizer.vocab_size} tokens")

    with InferenceEngine(model, tokenizer, EngineConfig(max_concurrent_sessions=1)) as engine:
        if args.interactive:
            interactive_loop(engine, options, args.stream)
        else:
            try:
                sys.exit(run_once(engine, args.prompt, options, args.stream))
            except LlamaRuntimeError as exc:
                print(f"error: {exc}", file=sys.stderr)
                sys.exit(1)


if __name__ == "__main__":
    main()
