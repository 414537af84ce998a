"""
pocket-lm: local, in-process text generation.

One event loop owns everything:

  Registry:   model id → descriptor → at most one live session
  Tokenizer:  text ↔ token ids over a fixed (injectable) vocabulary
  Decode:     forward → temperature → softmax → top-k/top-p → sample
  Worker:     async operations the host calls, failures kept in-band

INL - 2025
"""

__version__ = "0.1.0"
