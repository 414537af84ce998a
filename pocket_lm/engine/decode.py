"""
pocket-lm :: Decode Engine

Autoregressive loop over one session:

    while not done:
        logits = session.run(all tokens so far)[-1]   # full sequence, no KV cache
        token  = sample(logits)                       # temperature/top-k/top-p
        state.append(token)
        stop?  max_tokens reached, stop sequence in decoded suffix, or cancelled
        await asyncio.sleep(0)                        # let other coroutines run

The whole growing sequence is re-submitted every step. That is a
throughput limit (O(n²) work), not a correctness issue; DecodeState is
the one place a future cached decode would keep its state.

INL - 2025
"""

import asyncio
import time
import torch
from typing import AsyncIterator, List, Optional, Tuple
from dataclasses import dataclass

from pocket_lm.core.errors import InferenceOutputError, SessionUnavailable
from pocket_lm.core.logging import get_logger
from pocket_lm.core.registry import ModelSession
from pocket_lm.core.sampling import SamplingParams, sample_token
from pocket_lm.core.tokenizer import Tokenizer

logger = get_logger("pocket_lm.engine")

OUTPUT_KEYS = ("logits", "output")


class CancellationToken:
    """Checked once per decode step. Cancelling is sticky."""

    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class DecodeState:
    """Per-run state threaded through every step."""
    tokens: List[int]
    prompt_len: int
    steps: int = 0
    finish_reason: Optional[str] = None
    stop_index: Optional[int] = None   # char offset of the matched stop sequence

    @property
    def generated(self) -> List[int]:
        return self.tokens[self.prompt_len:]

    def append(self, token_id: int):
        self.tokens.append(token_id)
        self.steps += 1


@dataclass
class DecodeResult:
    """Generated tokens (prompt excluded) and how the run ended."""
    tokens: List[int]
    text: str
    elapsed_ms: float
    finish_reason: str = "length"  # "length", "stop", "cancelled"
    steps: int = 0
    prompt_tokens: int = 0


class DecodeEngine:
    """
    Sampling loop. Stateless between runs; one instance serves every
    session, the tokenizer is only used for stop-sequence checks and
    for the returned text.
    """

    def __init__(self, tokenizer: Tokenizer, device: str = "cpu"):
        self.tokenizer = tokenizer
        self.device = device

    @property
    def vocab_size(self) -> int:
        return self.tokenizer.vocab_size

    # =====================================================================
    # One step
    # =====================================================================

    def forward(self, session: ModelSession, tokens: List[int]) -> torch.Tensor:
        """Forward pass on the full sequence → final-position logits (vocab,)."""
        if session is None or not session.is_live or session.handle is None:
            model_id = session.id if session is not None else "<none>"
            raise SessionUnavailable(model_id, reason="session released")

        input_ids = torch.tensor([tokens], dtype=torch.long, device=self.device)
        outputs = session.handle.run(input_ids)

        logits = None
        if isinstance(outputs, dict):
            for key in OUTPUT_KEYS:
                if outputs.get(key) is not None:
                    logits = outputs[key]
                    break
            if logits is None and outputs:
                logits = next(iter(outputs.values()))
        elif isinstance(outputs, torch.Tensor):
            logits = outputs

        if not isinstance(logits, torch.Tensor) or logits.numel() == 0:
            raise InferenceOutputError(f"No output tensor found in model results for {session.id}")

        logits = logits.reshape(-1, logits.shape[-1])[-1].float()
        # Ids past the tokenizer's vocabulary could never be decoded
        if logits.shape[0] > self.vocab_size:
            logits = logits[: self.vocab_size]
        return logits

    def check_stop(self, state: DecodeState, stop_sequences: List[str]) -> bool:
        """Decode the generated suffix; record the earliest stop match."""
        if not stop_sequences:
            return False
        text = self.tokenizer.decode(state.generated)
        hits = [text.find(s) for s in stop_sequences if s and s in text]
        if not hits:
            return False
        state.stop_index = min(hits)
        return True

    # =====================================================================
    # Loop
    # =====================================================================

    def _prepare(self, prompt_tokens: List[int], params: SamplingParams) -> DecodeState:
        error = params.validate()
        if error:
            raise ValueError(error)
        if not prompt_tokens:
            raise ValueError("prompt must encode to at least one token")
        for t in prompt_tokens:
            if not 0 <= int(t) < self.vocab_size:
                raise ValueError(f"prompt token {t} outside [0, {self.vocab_size})")
        return DecodeState(tokens=[int(t) for t in prompt_tokens], prompt_len=len(prompt_tokens))

    async def _steps(
        self,
        session: ModelSession,
        state: DecodeState,
        params: SamplingParams,
        cancel: Optional[CancellationToken],
    ) -> AsyncIterator[int]:
        generator = params.make_generator()
        while state.steps < params.max_tokens:
            if cancel is not None and cancel.cancelled:
                state.finish_reason = "cancelled"
                return

            logits = self.forward(session, state.tokens)
            token_id = sample_token(logits, params, generator)
            if not 0 <= token_id < self.vocab_size:
                raise InferenceOutputError(f"sampled token {token_id} outside [0, {self.vocab_size})")

            state.append(token_id)
            if self.check_stop(state, params.stop_sequences):
                state.finish_reason = "stop"
                yield token_id
                return
            yield token_id

            await asyncio.sleep(0)

        state.finish_reason = "length"

    def final_text(self, state: DecodeState) -> str:
        """Decoded output, cut at the matched stop sequence."""
        text = self.tokenizer.decode(state.generated)
        if state.stop_index is not None:
            text = text[: state.stop_index].rstrip()
        return text

    def settled_text(self, state: DecodeState, stop_sequences: List[str]) -> str:
        """
        Prefix of the output that no later token can retract: a tail
        that could still grow into a stop sequence is held back.
        """
        if state.stop_index is not None or not stop_sequences:
            return self.final_text(state)
        text = self.tokenizer.decode(state.generated)
        held = 0
        for stop in stop_sequences:
            for n in range(min(len(stop) - 1, len(text)), held, -1):
                if text.endswith(stop[:n]):
                    held = n
                    break
        return text[: len(text) - held].rstrip()

    def _result(self, state: DecodeState, t0: float) -> DecodeResult:
        return DecodeResult(
            tokens=state.generated,
            text=self.final_text(state),
            elapsed_ms=(time.perf_counter() - t0) * 1000,
            finish_reason=state.finish_reason or "length",
            steps=state.steps,
            prompt_tokens=state.prompt_len,
        )

    async def run(
        self,
        session: ModelSession,
        prompt_tokens: List[int],
        params: SamplingParams,
        cancel: Optional[CancellationToken] = None,
    ) -> DecodeResult:
        """
        Generate up to params.max_tokens tokens after the prompt.

        Raises:
            ValueError: bad params or empty prompt
            SessionUnavailable: session missing or released
            InferenceOutputError: model returned no logits
        """
        t0 = time.perf_counter()
        state = self._prepare(prompt_tokens, params)
        async for _ in self._steps(session, state, params, cancel):
            pass
        result = self._result(state, t0)
        logger.debug(
            f"decode {session.id}: {len(result.tokens)} tokens in {result.elapsed_ms:.1f}ms "
            f"({result.finish_reason})"
        )
        return result

    async def stream(
        self,
        session: ModelSession,
        prompt_tokens: List[int],
        params: SamplingParams,
        cancel: Optional[CancellationToken] = None,
    ) -> AsyncIterator[Tuple[Optional[int], str]]:
        """
        Yield (token_id, text) as tokens are sampled. text is the newly
        settled part of the output and may be empty; a final (None, tail)
        flushes anything still held back. The concatenated text equals
        what run() returns, stop sequence excluded.
        """
        state = self._prepare(prompt_tokens, params)
        emitted = ""
        async for token_id in self._steps(session, state, params, cancel):
            piece = _advance(emitted, self.settled_text(state, params.stop_sequences))
            emitted += piece
            yield token_id, piece
        tail = _advance(emitted, self.final_text(state))
        if tail:
            yield None, tail


def _advance(emitted: str, text: str) -> str:
    """Part of text past what was already sent; empty if text no longer extends it."""
    if len(text) > len(emitted) and text.startswith(emitted):
        return text[len(emitted):]
    return ""
