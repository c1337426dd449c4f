"""
Unit tests for full-precision checkpoints.

Tests verify:
  1. Save → load reproduces every parameter bit-for-bit
  2. The config travels in the file, so no model is needed to load
  3. Count/name/size mismatches are FormatErrors and leave the target untouched
  4. Truncated or foreign files are FormatErrors
"""

import sys
import os

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_rt.checkpoint import load_checkpoint, read_checkpoint_metadata, save_checkpoint
from llama_rt.config import ModelConfig
from llama_rt.errors import FormatError
from llama_rt.model import Transformer


@pytest.fixture
def config():
    return ModelConfig(
        vocab_size=259,
        dim=64,
        n_layers=2,
        n_heads=4,
        n_kv_heads=2,
        hidden_dim=128,
        max_seq_len=32,
    )


@pytest.fixture
def saved(tmp_path, config):
    torch.manual_seed(0)
    model = Transformer(config).eval()
    path = str(tmp_path / "model.lrtc")
    save_checkpoint(model, path, extra={"tokenizer": "byte", "step": 10})
    return model, path


class TestRoundTrip:
    def test_parameters_bit_identical(self, saved):
        model, path = saved
        loaded, _ = load_checkpoint(path)
        original = dict(model.named_parameters())
        for name, param in loaded.named_parameters():
            assert torch.equal(param, original[name]), name

    def test_forward_identical(self, saved, config):
        model, path = saved
        loaded, _ = load_checkpoint(path)
        tokens = torch.randint(0, config.vocab_size, (2, 10))
        with torch.inference_mode():
            a, _ = model(tokens)
            b, _ = loaded(tokens)
        assert torch.equal(a, b)

    def test_into_existing_model(self, saved, config):
        model, path = saved
        target = Transformer(config)
        returned, _ = load_checkpoint(path, model=target)
        assert returned is target
        assert torch.equal(target.norm.weight, model.norm.weight)
        assert not target.is_trainable

    def test_extra_metadata(self, saved):
        _, path = saved
        _, extra = load_checkpoint(path)
        assert extra == {"tokenizer": "byte", "step": 10}

    def test_read_metadata_only(self, saved, config):
        _, path = saved
        meta = read_checkpoint_metadata(path)
        assert ModelConfig.from_dict(meta["config"]) == config
        assert meta["extra"]["step"] == 10


class TestMismatch:
    """The target model must be left as it was."""

    def test_layer_count_mismatch(self, saved, config):
        _, path = saved
        bigger = ModelConfig.from_dict({**config.to_dict(), "n_layers": 3})
        target = Transformer(bigger)
        before = {n: p.detach().clone() for n, p in target.named_parameters()}
        with pytest.raises(FormatError):
            load_checkpoint(path, model=target)
        for name, param in target.named_parameters():
            assert torch.equal(param, before[name])

    def test_size_mismatch(self, saved, config):
        _, path = saved
        wider = ModelConfig.from_dict({**config.to_dict(), "hidden_dim": 192})
        target = Transformer(wider)
        before = target.tok_embeddings.weight.detach().clone()
        with pytest.raises(FormatError):
            load_checkpoint(path, model=target)
        assert torch.equal(target.tok_embeddings.weight, before)

    def test_architecture_mismatch(self, saved, config):
        """A gelu FFN has no gate projection, so the tensor lists differ."""
        _, path = saved
        other = ModelConfig.from_dict({**config.to_dict(), "ffn_type": "gelu"})
        with pytest.raises(FormatError):
            load_checkpoint(path, model=Transformer(other))


class TestCorruption:
    def test_truncated(self, saved):
        _, path = saved
        size = os.path.getsize(path)
        with open(path, "r+b") as f:
            f.truncate(size - 10)
        with pytest.raises(FormatError):
            load_checkpoint(path)

    def test_truncated_header(self, tmp_path):
        path = tmp_path / "short.lrtc"
        path.write_bytes(b"LRTC")
        with pytest.raises(FormatError):
            load_checkpoint(str(path))

    def test_bad_magic(self, saved):
        _, path = saved
        with open(path, "r+b") as f:
            f.write(b"XXXX")
        with pytest.raises(FormatError):
            load_checkpoint(path)

    @pytest.mark.parametrize("meta", [b"{not json", b'{"config": "x"}', b'{"config": null}',
                                      b"[1, 2]", b'"x"'])
    def test_bad_metadata(self, tmp_path, meta):
        path = tmp_path / "meta.lrtc"
        path.write_bytes(b"LRTC" + (1).to_bytes(4, "little") + b"\x00" * 8
                         + len(meta).to_bytes(4, "little") + meta)
        with pytest.raises(FormatError):
            read_checkpoint_metadata(str(path))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
