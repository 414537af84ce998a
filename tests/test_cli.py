"""
pocket-lm :: Test CLI

Run:
    python -m pytest tests/test_cli.py -v

INL - 2025
"""

import argparse
import json
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pocket_lm import cli
from pocket_lm.core.loader import save_tiny_lm
from pocket_lm.core.tokenizer import WordTokenizer
from pocket_lm.models.tiny_lm import TinyCausalLM, TinyLMConfig


@pytest.fixture
def manifest(tmp_path):
    vocab = WordTokenizer().vocab_size
    config = TinyLMConfig(
        vocab_size=vocab, hidden_size=16, num_hidden_layers=1,
        num_attention_heads=2, intermediate_size=32, max_position_embeddings=64,
    )
    save_tiny_lm(TinyCausalLM(config), str(tmp_path / "tiny"))
    path = tmp_path / "models.json"
    path.write_text(json.dumps({"models": [
        {"id": "tiny", "name": "Tiny", "path": str(tmp_path / "tiny"),
         "capabilities": ["text-generation"], "maxTokens": 64, "size": "1MB"},
        {"id": "ghost", "path": str(tmp_path / "missing")},
    ]}))
    return str(path)


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["pocket-lm", *argv])
    cli.main()


def test_build_config_layers(tmp_path, monkeypatch):
    path = tmp_path / "worker.json"
    path.write_text(json.dumps({"port": 9000, "device": "cuda"}))
    monkeypatch.setenv("POCKET_LM_PORT", "9001")
    args = argparse.Namespace(config=str(path), manifest="m.json", port=None, device="cpu", json_logs=True)

    config = cli.build_config(args)

    assert config.port == 9001
    assert config.device == "cpu"
    assert config.manifest_path == "m.json"
    assert config.json_logs is True


def test_list(manifest, monkeypatch, capsys):
    run_cli(monkeypatch, "list", "--manifest", manifest)
    out = capsys.readouterr().out
    assert "tiny" in out
    assert "ghost" in out


def test_generate(manifest, monkeypatch, capsys):
    run_cli(monkeypatch, "generate", "tiny", "hello world", "--manifest", manifest, "--max-tokens", "3", "--seed", "0")
    captured = capsys.readouterr()
    assert "3 tokens" in captured.err


def test_check(manifest, monkeypatch, capsys):
    run_cli(monkeypatch, "check", "tiny", "--manifest", manifest)
    out = capsys.readouterr().out
    assert "load         OK" in out
    assert "unload       OK" in out


def test_check_missing_artifact(manifest, monkeypatch, capsys):
    with pytest.raises(SystemExit) as exc:
        run_cli(monkeypatch, "check", "ghost", "--manifest", manifest)
    assert exc.value.code == 1
    assert "MISSING" in capsys.readouterr().out


def test_no_manifest(monkeypatch):
    monkeypatch.delenv("POCKET_LM_MANIFEST_PATH", raising=False)
    with pytest.raises(SystemExit) as exc:
        run_cli(monkeypatch, "list")
    assert exc.value.code == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
