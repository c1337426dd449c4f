"""
Tokenizers: text ↔ token ids.

The runtime treats the tokenizer as an injected collaborator with a narrow
contract (the Tokenizer protocol below). Two implementations ship:

  SentencePieceTokenizer  Wraps a trained SentencePiece model (BPE with
                          byte-fallback, the LLaMA tokenizer family).
  ByteTokenizer           UTF-8 bytes shifted past three special ids. Needs
                          no model file, which makes it the tokenizer of
                          choice for tests and for byte-level models.

TOKEN ID LAYOUT (both implementations, for the default SentencePiece setup):
  0        : <unk>
  1        : <s>    (BOS - beginning of sequence)
  2        : </s>   (EOS - end of sequence)
  3-258    : byte tokens <0x00>-<0xFF>
  259-...  : learned subword tokens (SentencePiece only)

Selection is a closed set: TokenizerKind names every implementation and
load_tokenizer() dispatches on it with one match.
"""

import enum
import logging
import os
from typing import List, Optional, Protocol, runtime_checkable

import sentencepiece as spm

from llama_rt.errors import ValidationError

logger = logging.getLogger(__name__)


@runtime_checkable
class Tokenizer(Protocol):
    """What the session layer needs from a tokenizer."""

    def encode(self, text: str, bos: bool = True, eos: bool = False) -> List[int]: ...

    def decode(self, tokens: List[int]) -> str: ...

    @property
    def vocab_size(self) -> int: ...

    @property
    def bos_id(self) -> int: ...

    @property
    def eos_id(self) -> int: ...


class SentencePieceTokenizer:
    """
    Wrapper around a trained SentencePiece model for encode/decode.

    USAGE:
      tokenizer = SentencePieceTokenizer("data/tokenizer.model")
      tokens = tokenizer.encode("Once upon a time", bos=True, eos=False)
      # → [1, 432, 876, 12, 345]
      text = tokenizer.decode(tokens[1:])
      # → "Once upon a time"
    """

    def __init__(self, model_path: str):
        """
        Load a trained SentencePiece model.

        Raises:
            FileNotFoundError: If the model file doesn't exist.
        """
        if not os.path.exists(model_path):
            raise FileNotFoundError(f"Tokenizer model not found: {model_path}")
        self.model_path = model_path
        self._sp = spm.SentencePieceProcessor()
        self._sp.Load(model_path)
        logger.info("loaded SentencePiece tokenizer %s (vocab %d)", model_path, self.vocab_size)

    def encode(self, text: str, bos: bool = True, eos: bool = False) -> List[int]:
        """
        Encode text into a list of token IDs.

        BOS/EOS CONVENTIONS:
          - Generation prompt: bos=True, eos=False (BOS signals start)
          - Full sequence: bos=True, eos=True (for standalone evaluation)
        """
        tokens = self._sp.Encode(text)
        if bos:
            tokens = [self.bos_id] + tokens
        if eos:
            tokens = tokens + [self.eos_id]
        return tokens

    def decode(self, tokens: List[int]) -> str:
        """Decode ids back to text. BOS/EOS are dropped, byte tokens reassembled."""
        return self._sp.Decode(list(tokens))

    @property
    def vocab_size(self) -> int:
        return self._sp.GetPieceSize()

    @property
    def bos_id(self) -> int:
        return self._sp.bos_id()

    @property
    def eos_id(self) -> int:
        return self._sp.eos_id()

    @property
    def unk_id(self) -> int:
        return self._sp.unk_id()

    def id_to_piece(self, token_id: int) -> str:
        """
        Convert a token ID to its string representation.

        The "▁" (U+2581) character represents a space at the start of a word.
        """
        return self._sp.IdToPiece(token_id)

    def piece_to_id(self, piece: str) -> int:
        return self._sp.PieceToId(piece)

    def __len__(self) -> int:
        return self.vocab_size


class ByteTokenizer:
    """
    Byte-level tokenizer: every UTF-8 byte b is token b + 3.

    Lossless for any text. Decoding skips special ids and replaces invalid
    UTF-8 (e.g. a multi-byte character cut in half) with U+FFFD, so partial
    outputs always decode.
    """

    OFFSET = 3

    def __init__(self):
        self.unk_id = 0
        self._bos_id = 1
        self._eos_id = 2

    def encode(self, text: str, bos: bool = True, eos: bool = False) -> List[int]:
        tokens = [b + self.OFFSET for b in text.encode("utf-8")]
        if bos:
            tokens = [self._bos_id] + tokens
        if eos:
            tokens = tokens + [self._eos_id]
        return tokens

    def decode(self, tokens: List[int]) -> str:
        raw = bytes(t - self.OFFSET for t in tokens if self.OFFSET <= t < self.vocab_size)
        return raw.decode("utf-8", errors="replace")

    @property
    def vocab_size(self) -> int:
        return 256 + self.OFFSET

    @property
    def bos_id(self) -> int:
        return self._bos_id

    @property
    def eos_id(self) -> int:
        return self._eos_id

    def id_to_piece(self, token_id: int) -> str:
        if token_id == self.unk_id:
            return "<unk>"
        if token_id == self._bos_id:
            return "<s>"
        if token_id == self._eos_id:
            return "</s>"
        return f"<0x{token_id - self.OFFSET:02X}>"

    def __len__(self) -> int:
        return self.vocab_size


class TokenizerKind(enum.Enum):
    SENTENCEPIECE = "sentencepiece"
    BYTE = "byte"

    @classmethod
    def parse(cls, name: str) -> "TokenizerKind":
        try:
            return cls(name.lower())
        except ValueError:
            choices = ", ".join(k.value for k in cls)
            raise ValidationError(f"unknown tokenizer kind {name!r} (choose from {choices})",
                                  field="tokenizer") from None


def load_tokenizer(kind, path: Optional[str] = None) -> Tokenizer:
    """
    Build a tokenizer of the given kind.

    Args:
        kind: TokenizerKind or its string value.
        path: Model file, required for SENTENCEPIECE.
    """
    if isinstance(kind, str):
        kind = TokenizerKind.parse(kind)
    if kind is TokenizerKind.SENTENCEPIECE:
        if path is None:
            raise ValidationError("a SentencePiece tokenizer needs a model path", field="path")
        return SentencePieceTokenizer(path)
    if kind is TokenizerKind.BYTE:
        return ByteTokenizer()
    raise ValidationError(f"unsupported tokenizer kind {kind!r}", field="tokenizer")
