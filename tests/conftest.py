"""
pocket-lm :: Test fixtures

Scripted session handles: each forward pass returns logits that put
all the mass on the next id of a fixed script, so decode results are
exact without any real weights.

INL - 2025
"""

import asyncio
import time
import sys
import os

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pocket_lm.core.registry import ModelDescriptor, ModelRegistry
from pocket_lm.core.tokenizer import Vocabulary, WordTokenizer


class ScriptedHandle:
    """Session handle replaying script[step % len(script)] as the argmax."""

    def __init__(self, script, vocab_size, step_delay=0.0, fail_release=False, outputs=None):
        for idx in script:
            if not isinstance(idx, int) or not 0 <= idx < vocab_size:
                raise ValueError(f"script id {idx!r} outside [0, {vocab_size})")
        self.script = list(script)
        self.vocab_size = vocab_size
        self.step_delay = step_delay
        self.fail_release = fail_release
        self.outputs = outputs
        self.calls = 0
        self.seen = []
        self.release_count = 0

    def run(self, input_ids):
        self.seen.append(input_ids.tolist())
        step = self.calls
        self.calls += 1
        if self.step_delay:
            time.sleep(self.step_delay)
        if self.outputs is not None:
            return self.outputs
        logits = torch.full((1, input_ids.shape[1], self.vocab_size), -1e4)
        logits[0, -1, self.script[step % len(self.script)]] = 1e4
        return {"logits": logits}

    def release(self):
        self.release_count += 1
        if self.fail_release:
            raise RuntimeError("device busy")


class CountingFactory:
    """session_factory that records every allocation."""

    def __init__(self, make_handle, delay=0.0, fail_times=0):
        self.make_handle = make_handle
        self.delay = delay
        self.fail_times = fail_times
        self.calls = []
        self.handles = {}

    async def __call__(self, descriptor, location):
        self.calls.append((descriptor.id, location))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise OSError(f"cannot read {location}")
        handle = self.make_handle(descriptor)
        self.handles[descriptor.id] = handle
        return handle


@pytest.fixture
def tokenizer():
    """Sparse word vocabulary: ids need not be contiguous."""
    return WordTokenizer(Vocabulary({"<unk>": 1, "hello": 5, "world": 6, ".": 30}))


@pytest.fixture
def script(tokenizer):
    """ids for "hello world ." repeated."""
    ids = [tokenizer.token_to_id(w) for w in ("hello", "world", ".")]
    assert None not in ids
    return ids


@pytest.fixture
def descriptors():
    return [
        ModelDescriptor(
            id="m",
            display_name="Main",
            artifact_location="/models/m",
            capabilities=frozenset({"text-generation", "summarization"}),
            size="637MB",
        ),
        ModelDescriptor(
            id="small",
            display_name="Small",
            artifact_location="/models/small",
            capabilities=frozenset({"text-generation"}),
            token_limit=3,
            size="2.2GB",
        ),
    ]


@pytest.fixture
def factory(tokenizer, script):
    return CountingFactory(lambda d: ScriptedHandle(script, tokenizer.vocab_size))


@pytest.fixture
def registry(descriptors, factory):
    return ModelRegistry(descriptors, session_factory=factory)
