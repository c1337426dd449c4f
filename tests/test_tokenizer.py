"""
Unit tests for the tokenizers.

The SentencePiece tests train a tiny BPE model into a temp directory, so
they need no prepared data files.

Tests verify:
  1. Encode/decode roundtrip preserves text
  2. Byte-fallback handles non-ASCII characters
  3. Special tokens (BOS, EOS) are correctly handled
  4. Vocabulary size and piece lookups
  5. The byte tokenizer is lossless and tolerates cut multi-byte characters
  6. load_tokenizer dispatches on the tokenizer kind
"""

import sys
import os

import pytest
import sentencepiece as spm

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_rt.errors import ValidationError
from llama_rt.tokenizer import (
    ByteTokenizer,
    SentencePieceTokenizer,
    Tokenizer,
    TokenizerKind,
    load_tokenizer,
)

CORPUS = [
    "Once upon a time, there was a little cat.",
    "The sun was shining bright in the blue sky.",
    "She smiled and said hello to her friend.",
    "The little dog ran to the park with his ball.",
    "Tom and Lily played in the garden all day.",
    "The answer is 42.",
    "Question: What is 48 / 2?",
    "Answer: 24",
    "They went home and had a warm cup of milk.",
    "The bird sang a happy song in the tall tree.",
]


@pytest.fixture(scope="module")
def sp_model_path(tmp_path_factory):
    """Train a small BPE model with byte fallback."""
    root = tmp_path_factory.mktemp("spm")
    corpus = root / "corpus.txt"
    corpus.write_text("\n".join(CORPUS * 30) + "\n", encoding="utf-8")
    prefix = str(root / "tiny")
    spm.SentencePieceTrainer.Train(
        input=str(corpus),
        model_prefix=prefix,
        model_type="bpe",
        vocab_size=320,
        hard_vocab_limit=False,
        character_coverage=1.0,
        byte_fallback=True,
        split_digits=True,
        normalization_rule_name="identity",
        remove_extra_whitespaces=False,
        unk_id=0,
        bos_id=1,
        eos_id=2,
        pad_id=-1,
        num_threads=1,
    )
    return prefix + ".model"


@pytest.fixture
def tokenizer(sp_model_path):
    return SentencePieceTokenizer(sp_model_path)


class TestRoundtrip:
    """Encode/decode should preserve text."""

    def test_simple_text(self, tokenizer):
        text = "Once upon a time, there was a little cat."
        tokens = tokenizer.encode(text, bos=False, eos=False)
        decoded = tokenizer.decode(tokens)
        assert decoded == text

    def test_multiple_sentences(self, tokenizer):
        text = "Hello world. How are you? I am fine."
        tokens = tokenizer.encode(text, bos=False, eos=False)
        decoded = tokenizer.decode(tokens)
        assert decoded == text

    def test_numbers(self, tokenizer):
        text = "The answer is 42."
        tokens = tokenizer.encode(text, bos=False, eos=False)
        decoded = tokenizer.decode(tokens)
        assert decoded == text

    def test_empty_string(self, tokenizer):
        tokens = tokenizer.encode("", bos=False, eos=False)
        decoded = tokenizer.decode(tokens)
        assert decoded == ""

    def test_special_ids_dropped_on_decode(self, tokenizer):
        tokens = tokenizer.encode("The little dog", bos=True, eos=True)
        assert tokenizer.decode(tokens) == "The little dog"


class TestByteFallback:
    """Byte-fallback should handle non-ASCII characters."""

    def test_no_unk_for_ascii(self, tokenizer):
        text = "Hello, world!"
        tokens = tokenizer.encode(text, bos=False, eos=False)
        assert tokenizer.unk_id not in tokens

    def test_accented_characters(self, tokenizer):
        """Characters like é, ñ should not produce UNK."""
        text = "café"
        tokens = tokenizer.encode(text, bos=False, eos=False)
        decoded = tokenizer.decode(tokens)
        assert decoded == text

    def test_unicode_roundtrip(self, tokenizer):
        """Unicode text should survive encode/decode."""
        texts = ["naïve", "über", "日本"]
        for text in texts:
            tokens = tokenizer.encode(text, bos=False, eos=False)
            decoded = tokenizer.decode(tokens)
            assert decoded == text, f"Failed for '{text}': got '{decoded}'"


class TestSpecialTokens:
    """Tests for BOS/EOS handling."""

    def test_bos_prepended(self, tokenizer):
        tokens = tokenizer.encode("Hello", bos=True, eos=False)
        assert tokens[0] == tokenizer.bos_id

    def test_eos_appended(self, tokenizer):
        tokens = tokenizer.encode("Hello", bos=False, eos=True)
        assert tokens[-1] == tokenizer.eos_id

    def test_no_special(self, tokenizer):
        tokens = tokenizer.encode("Hello", bos=False, eos=False)
        assert tokenizer.bos_id not in tokens
        assert tokenizer.eos_id not in tokens

    def test_special_token_ids(self, tokenizer):
        """Special token IDs should be standard SentencePiece values."""
        assert tokenizer.unk_id == 0
        assert tokenizer.bos_id == 1
        assert tokenizer.eos_id == 2


class TestVocabulary:
    """Tests for vocabulary properties."""

    def test_vocab_size_positive(self, tokenizer):
        assert tokenizer.vocab_size > 259

    def test_len_matches_vocab_size(self, tokenizer):
        assert len(tokenizer) == tokenizer.vocab_size

    def test_id_to_piece(self, tokenizer):
        piece = tokenizer.id_to_piece(tokenizer.bos_id)
        assert piece == "<s>"
        assert tokenizer.piece_to_id(piece) == tokenizer.bos_id

    def test_missing_model(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            SentencePieceTokenizer(str(tmp_path / "nope.model"))


class TestByteTokenizer:
    """Tests for the byte-level tokenizer."""

    def test_layout(self):
        tok = ByteTokenizer()
        assert tok.vocab_size == 259
        assert (tok.unk_id, tok.bos_id, tok.eos_id) == (0, 1, 2)
        assert tok.encode("A", bos=False) == [ord("A") + 3]

    def test_roundtrip_unicode(self):
        tok = ByteTokenizer()
        for text in ["Once upon a time", "café", "日本語", "🎉", ""]:
            assert tok.decode(tok.encode(text, bos=True, eos=True)) == text

    def test_cut_multibyte_character(self):
        """Half of a UTF-8 sequence decodes to U+FFFD instead of raising."""
        tok = ByteTokenizer()
        ids = tok.encode("é", bos=False)
        assert len(ids) == 2
        assert tok.decode(ids[:1]) == "�"

    def test_out_of_range_ids_skipped(self):
        tok = ByteTokenizer()
        assert tok.decode([1, ord("h") + 3, 500, ord("i") + 3, 2]) == "hi"

    def test_pieces(self):
        tok = ByteTokenizer()
        assert tok.id_to_piece(1) == "<s>"
        assert tok.id_to_piece(2) == "</s>"
        assert tok.id_to_piece(ord("A") + 3) == "<0x41>"

    def test_satisfies_protocol(self):
        assert isinstance(ByteTokenizer(), Tokenizer)


class TestLoadTokenizer:
    def test_byte(self):
        assert isinstance(load_tokenizer("byte"), ByteTokenizer)
        assert isinstance(load_tokenizer(TokenizerKind.BYTE), ByteTokenizer)

    def test_sentencepiece(self, sp_model_path):
        tok = load_tokenizer("SentencePiece", sp_model_path)
        assert isinstance(tok, SentencePieceTokenizer)
        assert isinstance(tok, Tokenizer)

    def test_sentencepiece_needs_path(self):
        with pytest.raises(ValidationError):
            load_tokenizer(TokenizerKind.SENTENCEPIECE)

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            TokenizerKind.parse("wordpiece")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
