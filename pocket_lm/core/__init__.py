"""
pocket-lm :: Core

Runtime infrastructure, independent of any one model artifact.
  - registry: descriptors + live sessions
  - tokenizer: text ↔ token ids
  - sampling: temperature / top-k / top-p
  - loader: artifact → session handle
"""

from pocket_lm.core.errors import (
    PocketLMError, ModelNotFound, AlreadyLoaded, LoadFailure,
    SessionUnavailable, InferenceOutputError, DegenerateDistribution,
)
from pocket_lm.core.registry import ModelDescriptor, ModelRegistry, ModelSession, load_manifest
from pocket_lm.core.tokenizer import Vocabulary, WordTokenizer, CharTokenizer, create_tokenizer
from pocket_lm.core.sampling import SamplingParams, sample_token
from pocket_lm.core.config import WorkerConfig
