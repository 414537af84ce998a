"""
Model implementations for pocket-lm.
Small causal LMs that run on CPU.
"""

from pocket_lm.models.tiny_lm import TinyCausalLM, TinyLMConfig
