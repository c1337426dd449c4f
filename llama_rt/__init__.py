"""
llama-rt: a governed inference runtime for LLaMA-style language models.

Loads full-precision checkpoints or quantized model files, runs cached
forward passes through pooled kernels, and serves generation requests with
token, context, time and concurrency budgets.

Key modules:
  - config:       ModelConfig, InferenceOptions, EngineConfig
  - errors:       Error taxonomy (ValidationError, ResourceLimitError, ...)
  - kernels:      Matmul, fused scale+mask+softmax, norms, activations
  - pool:         Size-class scratch buffer pool
  - kv_cache:     Pre-sized per-layer key/value arenas
  - model:        Transformer (RMSNorm/LayerNorm, RoPE/learned, SwiGLU/GELU, GQA)
  - quantization: F32 / F16 / Q8_0 / Q4_0 / Q4_1 codecs
  - model_file:   Quantized model container reader/writer
  - checkpoint:   Bit-exact full-precision checkpoints
  - tokenizer:    SentencePiece and byte-level tokenizers
  - sampling:     Temperature, top-k, top-p with explicit generators
  - session:      One governed, streamable generation
  - engine:       Bounded-concurrency multiplexer over sessions
  - generate:     One-call helpers
  - device:       Device selection and thread configuration
  - utils:        Seeding, summaries, timing, logging setup
"""

__version__ = "0.1.0"
