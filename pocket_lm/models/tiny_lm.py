"""
pocket-lm :: Tiny Causal LM

Small decoder-only transformer used as the built-in artifact format.
Stateless by construction: every call sees the whole sequence and
returns logits for every position; no KV cache.

INL - 2025
"""

import json
import torch
import torch.nn as nn
from dataclasses import dataclass, asdict, fields


@dataclass
class TinyLMConfig:
    """Model configuration, mirrors config.json in the artifact directory."""
    model_type: str = "tiny-causal-lm"
    vocab_size: int = 256
    hidden_size: int = 64
    num_hidden_layers: int = 2
    num_attention_heads: int = 4
    intermediate_size: int = 128
    max_position_embeddings: int = 512
    dropout: float = 0.0

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_attention_heads

    @staticmethod
    def from_dict(data: dict) -> "TinyLMConfig":
        known = {f.name for f in fields(TinyLMConfig)}
        return TinyLMConfig(**{k: v for k, v in data.items() if k in known})

    @staticmethod
    def from_json(path: str) -> "TinyLMConfig":
        """Load from an artifact config.json (unknown keys ignored)."""
        with open(path, "r") as f:
            return TinyLMConfig.from_dict(json.load(f))

    def to_json(self, path: str):
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)


class TinyCausalLM(nn.Module):
    """
    token ids (batch, seq) → logits (batch, seq, vocab)

    Sequences longer than max_position_embeddings are left-truncated.
    """

    def __init__(self, config: TinyLMConfig):
        super().__init__()
        self.config = config
        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_size)
        self.embed_positions = nn.Embedding(config.max_position_embeddings, config.hidden_size)
        layer = nn.TransformerEncoderLayer(
            d_model=config.hidden_size,
            nhead=config.num_attention_heads,
            dim_feedforward=config.intermediate_size,
            dropout=config.dropout,
            activation="gelu",
            batch_first=True,
            norm_first=True,
        )
        self.layers = nn.TransformerEncoder(layer, num_layers=config.num_hidden_layers, enable_nested_tensor=False)
        self.norm = nn.LayerNorm(config.hidden_size)
        self.lm_head = nn.Linear(config.hidden_size, config.vocab_size, bias=False)

    def forward(self, input_ids: torch.Tensor) -> torch.Tensor:
        if input_ids.dim() == 1:
            input_ids = input_ids.unsqueeze(0)
        max_len = self.config.max_position_embeddings
        if input_ids.shape[1] > max_len:
            input_ids = input_ids[:, -max_len:]

        seq_len = input_ids.shape[1]
        positions = torch.arange(seq_len, device=input_ids.device).unsqueeze(0)
        hidden = self.embed_tokens(input_ids) + self.embed_positions(positions)

        causal = torch.triu(
            torch.full((seq_len, seq_len), float("-inf"), device=input_ids.device), diagonal=1
        )
        hidden = self.layers(hidden, mask=causal)
        return self.lm_head(self.norm(hidden))
