"""
pocket-lm :: Sampling

Turns final-position logits into one token id.

  1. temperature:  logits / T   (T < 1 sharpens, T > 1 flattens)
  2. softmax:      max-subtracted for numerical stability
  3. top-k:        keep the k most probable, renormalize
  4. top-p:        keep the smallest prefix (by probability) whose mass
                   reaches p, renormalize
  5. draw:         one uniform number walked along the cumulative sum

If filtering collapses the distribution (all zero / NaN) the sampler
falls back to argmax over the raw logits instead of failing.

INL - 2025
"""

import math
import torch
from typing import Optional, List
from dataclasses import dataclass, field

from pocket_lm.core.errors import DegenerateDistribution
from pocket_lm.core.logging import get_logger

logger = get_logger("pocket_lm.sampling")

PROB_TOLERANCE = 1e-5


@dataclass
class SamplingParams:
    """Per-request decode settings."""
    max_tokens: int = 256
    temperature: float = 1.0
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop_sequences: List[str] = field(default_factory=list)
    seed: Optional[int] = None

    def validate(self) -> Optional[str]:
        """Validate parameters. Returns error message or None."""
        if not isinstance(self.max_tokens, int) or self.max_tokens < 1:
            return "max_tokens must be >= 1"
        if not self.temperature > 0 or not math.isfinite(self.temperature):
            return "temperature must be > 0"
        if self.top_p is not None and not (0.0 < self.top_p <= 1.0):
            return "top_p must be in (0, 1]"
        if self.top_k is not None and (not isinstance(self.top_k, int) or self.top_k < 1):
            return "top_k must be >= 1"
        if any(not isinstance(s, str) for s in self.stop_sequences):
            return "stop_sequences must be strings"
        return None

    def make_generator(self, device: str = "cpu") -> torch.Generator:
        """Seeded generator when seed is set, otherwise a freshly seeded one."""
        gen = torch.Generator(device=device)
        if self.seed is not None:
            gen.manual_seed(int(self.seed))
        else:
            gen.seed()
        return gen


def apply_temperature(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    if temperature <= 0:
        raise ValueError(f"temperature must be > 0, got {temperature}")
    logits = logits.float()
    if temperature == 1.0:
        return logits
    return logits / temperature


def softmax(logits: torch.Tensor) -> torch.Tensor:
    """Softmax with max subtraction."""
    shifted = logits - logits.max()
    exp = shifted.exp()
    return exp / exp.sum()


def renormalize(probs: torch.Tensor) -> torch.Tensor:
    total = probs.sum()
    if not torch.isfinite(total) or total.item() <= 0.0:
        raise DegenerateDistribution(f"probability mass collapsed (sum={total.item()})")
    return probs / total


def top_k_filter(probs: torch.Tensor, k: int) -> torch.Tensor:
    """Zero all but the k highest probabilities, renormalize."""
    if k >= probs.shape[-1]:
        return probs
    _, keep = probs.topk(k)
    filtered = torch.zeros_like(probs)
    filtered[keep] = probs[keep]
    return renormalize(filtered)


def nucleus_mask(probs: torch.Tensor, top_p: float) -> torch.Tensor:
    """
    Boolean mask of the nucleus: highest-probability tokens, in order,
    up to and including the one whose cumulative mass reaches top_p.
    """
    sorted_probs, sorted_idx = probs.sort(descending=True)
    cumulative = sorted_probs.cumsum(dim=-1)
    # Mass strictly before each token; the token that crosses top_p is kept
    keep_sorted = (cumulative - sorted_probs) < top_p
    keep_sorted[0] = True
    mask = torch.zeros_like(probs, dtype=torch.bool)
    mask[sorted_idx[keep_sorted]] = True
    return mask


def top_p_filter(probs: torch.Tensor, top_p: float) -> torch.Tensor:
    """Zero the tail outside the nucleus, renormalize."""
    if top_p >= 1.0:
        return probs
    mask = nucleus_mask(probs, top_p)
    return renormalize(torch.where(mask, probs, torch.zeros_like(probs)))


def process_logits(logits: torch.Tensor, params: SamplingParams) -> torch.Tensor:
    """
    logits (vocab,) → filtered probabilities (vocab,) summing to 1.

    Raises DegenerateDistribution if nothing usable is left.
    """
    probs = softmax(apply_temperature(logits, params.temperature))
    if not torch.isfinite(probs).all():
        raise DegenerateDistribution("softmax produced non-finite values")
    if params.top_k is not None:
        probs = top_k_filter(probs, params.top_k)
    if params.top_p is not None:
        probs = top_p_filter(probs, params.top_p)
    return probs


def draw(probs: torch.Tensor, generator: Optional[torch.Generator] = None) -> int:
    """Walk one uniform draw against the cumulative distribution."""
    cumulative = probs.cumsum(dim=-1)
    r = torch.rand(1, generator=generator, device=probs.device, dtype=cumulative.dtype)
    idx = int(torch.searchsorted(cumulative, r).item())
    if idx >= probs.shape[-1] or probs[idx].item() == 0.0:
        # r landed past the float-rounded total: last token with mass
        nonzero = torch.nonzero(probs > 0).flatten()
        if nonzero.numel() == 0:
            raise DegenerateDistribution("no token has positive probability")
        idx = int(nonzero[-1].item()) if idx >= probs.shape[-1] else int(nonzero[nonzero >= idx][0].item())
    return idx


def argmax(logits: torch.Tensor) -> int:
    """Greedy pick. NaNs count as -inf."""
    clean = torch.nan_to_num(logits.float(), nan=float("-inf"))
    return int(clean.argmax().item())


def sample_token(
    logits: torch.Tensor,
    params: SamplingParams,
    generator: Optional[torch.Generator] = None,
) -> int:
    """
    Sample a single token from final-position logits.

    Args:
        logits: (vocab_size,) float tensor
        params: sampling parameters
        generator: seedable RNG (defaults to torch's global one)

    Returns:
        token_id: int
    """
    try:
        probs = process_logits(logits, params)
        return draw(probs, generator)
    except DegenerateDistribution as e:
        logger.debug(f"Degenerate distribution, falling back to argmax: {e}")
        return argmax(logits)
