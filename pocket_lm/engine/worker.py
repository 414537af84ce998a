"""
pocket-lm :: Inference Worker

The async boundary the host talks to. Every operation is an
independent coroutine; all of them run on one event loop.

    initialize → load_model → generate_text / chat / analyze_document
               → unload_model / cleanup

Ordering: model-touching operations go through one FIFO lock, so
requests run in arrival order and a long decode holds back later
loads and unloads. Between decode steps the loop is free for
cancel(), get_stats() and new arrivals.

Failure policy:
  - load/unload: bool + log, never raise
  - generation: "[Inference Error: ...]" string in place of the text
  - analysis:   "[Analysis Error: ...]" inside results

INL - 2025
"""

import asyncio
import itertools
import time
from typing import AsyncIterator, Dict, List, Optional
from dataclasses import dataclass, asdict

from pocket_lm.core.config import WorkerConfig
from pocket_lm.core.errors import InferenceOutputError, SessionUnavailable
from pocket_lm.core.logging import get_logger, RequestLogger
from pocket_lm.core.metrics import UNKNOWN_MODEL, WorkerMetrics
from pocket_lm.core.prompts import (
    ChatTemplate, build_analysis_prompt, clean_response, content_preview,
    validate_messages, ANALYSIS_KINDS,
)
from pocket_lm.core.registry import ModelRegistry
from pocket_lm.core.sampling import SamplingParams
from pocket_lm.core.tokenizer import Tokenizer, WordTokenizer
from pocket_lm.engine.decode import CancellationToken, DecodeEngine

logger = get_logger("pocket_lm.worker")

INFERENCE_ERROR_PREFIX = "[Inference Error: "
ANALYSIS_ERROR_PREFIX = "[Analysis Error: "


def inference_error(message: str) -> str:
    return f"{INFERENCE_ERROR_PREFIX}{message}]"


def analysis_error(message: str) -> str:
    return f"{ANALYSIS_ERROR_PREFIX}{message}]"


def is_error_text(text: str) -> bool:
    return text.startswith(INFERENCE_ERROR_PREFIX) or text.startswith(ANALYSIS_ERROR_PREFIX)


@dataclass
class GenerationResult:
    """Outcome of one generation. error is set iff text is a diagnostic."""
    request_id: str
    model_id: str
    text: str
    tokens_generated: int
    elapsed_ms: float
    finish_reason: str = "length"  # "length", "stop", "cancelled", "error"
    prompt_tokens: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ChatResult:
    """Assistant reply plus the bookkeeping of the generation behind it."""
    request_id: str
    model_id: str
    content: str
    finish_reason: str = "length"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def usage(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.prompt_tokens + self.completion_tokens,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.request_id,
            "model": self.model_id,
            "message": {"role": "assistant", "content": self.content},
            "finish_reason": self.finish_reason,
            "usage": self.usage,
        }


class InferenceWorker:
    """
    Host-facing operations over an injected registry and tokenizer.

    One worker per process/event loop. Nothing here is a module-level
    singleton, so tests build a fresh worker (and registry) each time.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        tokenizer: Optional[Tokenizer] = None,
        config: Optional[WorkerConfig] = None,
        metrics: Optional[WorkerMetrics] = None,
        chat_template: Optional[ChatTemplate] = None,
    ):
        self.registry = registry
        self.tokenizer = tokenizer or WordTokenizer()
        self.config = config or WorkerConfig()
        self.metrics = metrics or WorkerMetrics()
        self.chat_template = chat_template or ChatTemplate()
        self.engine = DecodeEngine(self.tokenizer, device=self.config.device)

        self._lock: Optional[asyncio.Lock] = None
        self._initialized = False
        self._ids = itertools.count(1)
        self._cancel_tokens: Dict[str, CancellationToken] = {}

        # Stats
        self.requests_served: int = 0
        self.active_requests: int = 0

    @property
    def lock(self) -> asyncio.Lock:
        """Created on first use, inside the loop that serves requests."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def metric_label(self, model_id: str) -> str:
        if isinstance(model_id, str) and self.registry.get_descriptor(model_id) is not None:
            return model_id
        return UNKNOWN_MODEL

    # =====================================================================
    # Lifecycle
    # =====================================================================

    async def initialize(self):
        """Idempotent."""
        if self._initialized:
            return
        self._initialized = True
        logger.info(
            f"Worker initialized: {len(self.registry.list_descriptors())} model(s) registered, "
            f"vocab_size={self.tokenizer.vocab_size}, device={self.config.device}"
        )

    async def load_model(self, model_id: str, location: Optional[str] = None) -> bool:
        await self.initialize()
        async with self.lock:
            ok = await self.registry.load_model(model_id, location)
        self.metrics.set_loaded(len(self.registry.get_loaded_models()))
        return ok

    async def unload_model(self, model_id: str) -> bool:
        async with self.lock:
            ok = await self.registry.unload_model(model_id)
        self.metrics.set_loaded(len(self.registry.get_loaded_models()))
        return ok

    async def cleanup(self):
        """Unload every session. Per-model failures are logged, the sweep continues."""
        async with self.lock:
            results = await self.registry.cleanup()
        failed = [mid for mid, ok in results.items() if not ok]
        if failed:
            logger.error(f"Cleanup finished with {len(failed)} failed unload(s): {', '.join(failed)}")
        else:
            logger.info(f"Cleanup finished: {len(results)} model(s) unloaded")
        self.metrics.set_loaded(len(self.registry.get_loaded_models()))

    # =====================================================================
    # Queries
    # =====================================================================

    async def get_loaded_models(self) -> List[str]:
        return self.registry.get_loaded_models()

    async def get_model_info(self, model_id: str) -> Optional[dict]:
        descriptor = self.registry.get_descriptor(model_id)
        if descriptor is None:
            return None
        info = descriptor.to_dict()
        info["loaded"] = self.registry.is_loaded(model_id)
        return info

    def get_stats(self) -> dict:
        return {
            "loaded_models": self.registry.get_loaded_models(),
            "registered_models": [d.id for d in self.registry.list_descriptors()],
            "requests_served": self.requests_served,
            "active_requests": self.active_requests,
            "release_failures": [
                {"id": s.id, "error": s.release_error} for s in self.registry.get_release_failures()
            ],
            "memory_estimate_mb": self.registry.memory_estimate_mb(),
            "models": self.metrics.summary(),
        }

    # =====================================================================
    # Generation
    # =====================================================================

    def cancel(self, request_id: str) -> bool:
        """Flag a pending or running generation. Takes effect at its next decode step."""
        token = self._cancel_tokens.get(request_id)
        if token is None:
            return False
        token.cancel()
        logger.info(f"Cancellation requested for {request_id}")
        return True

    def _build_params(
        self,
        model_id: str,
        max_tokens: Optional[int],
        temperature: Optional[float],
        top_p: Optional[float],
        top_k: Optional[int],
        stop_sequences: Optional[List[str]],
        seed: Optional[int],
    ) -> SamplingParams:
        cfg = self.config
        max_tokens = max_tokens if max_tokens is not None else cfg.default_max_tokens
        descriptor = self.registry.get_descriptor(model_id)
        if descriptor is not None and isinstance(max_tokens, int):
            max_tokens = min(max_tokens, descriptor.token_limit)
        return SamplingParams(
            max_tokens=max_tokens,
            temperature=temperature if temperature is not None else cfg.default_temperature,
            top_p=top_p if top_p is not None else cfg.default_top_p,
            top_k=top_k if top_k is not None else cfg.default_top_k,
            stop_sequences=list(stop_sequences or []),
            seed=seed,
        )

    async def generate(
        self,
        model_id: str,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        top_k: Optional[int] = None,
        stop_sequences: Optional[List[str]] = None,
        seed: Optional[int] = None,
        timeout_s: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> GenerationResult:
        """Structured generation. Never raises; failures land in result.error."""
        request_id = request_id or f"gen-{next(self._ids)}"
        rlog = RequestLogger(request_id, model_id=model_id)
        cancel = CancellationToken()
        self._cancel_tokens[request_id] = cancel
        self.active_requests += 1
        timeout = self.config.default_timeout_s if timeout_s is None else timeout_s

        try:
            params = self._build_params(model_id, max_tokens, temperature, top_p, top_k, stop_sequences, seed)
            rlog.info(f"Generating: \"{prompt[:50]}\"", max_tokens=params.max_tokens)
            run = self._generate_locked(model_id, prompt, params, cancel)
            if timeout and timeout > 0:
                decoded = await asyncio.wait_for(run, timeout)
            else:
                decoded = await run
        except asyncio.TimeoutError:
            return self._failure(request_id, model_id, rlog, "timeout", f"generation timed out after {timeout}s")
        except (SessionUnavailable, InferenceOutputError, ValueError) as e:
            return self._failure(request_id, model_id, rlog, type(e).__name__, str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            rlog.exception(f"Unexpected generation failure for {model_id}")
            return self._failure(request_id, model_id, rlog, type(e).__name__, str(e) or type(e).__name__)
        finally:
            self.active_requests -= 1
            self._cancel_tokens.pop(request_id, None)

        self.requests_served += 1
        self.metrics.on_generation(model_id, len(decoded.tokens), decoded.elapsed_ms)
        rlog.info(
            f"Generated {len(decoded.tokens)} tokens in {decoded.elapsed_ms:.1f}ms ({decoded.finish_reason})",
            tokens=len(decoded.tokens),
        )
        return GenerationResult(
            request_id=request_id,
            model_id=model_id,
            text=decoded.text,
            tokens_generated=len(decoded.tokens),
            elapsed_ms=decoded.elapsed_ms,
            finish_reason=decoded.finish_reason,
            prompt_tokens=decoded.prompt_tokens,
        )

    async def _generate_locked(self, model_id, prompt, params, cancel):
        async with self.lock:
            session = self.registry.get_session(model_id)
            prompt_tokens = self.tokenizer.encode(prompt)
            return await self.engine.run(session, prompt_tokens, params, cancel=cancel)

    def _failure(self, request_id, model_id, rlog, kind, message) -> GenerationResult:
        rlog.error(f"Generation failed ({kind}): {message}")
        self.metrics.on_error(self.metric_label(model_id), kind)
        return GenerationResult(
            request_id=request_id,
            model_id=model_id,
            text=inference_error(message),
            tokens_generated=0,
            elapsed_ms=rlog.elapsed_ms(),
            finish_reason="error",
            error=message,
        )

    async def generate_text(self, model_id: str, prompt: str, **options) -> str:
        """Text only. Failures come back as "[Inference Error: ...]"."""
        result = await self.generate(model_id, prompt, **options)
        return result.text

    async def generate_stream(
        self,
        model_id: str,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        top_k: Optional[int] = None,
        stop_sequences: Optional[List[str]] = None,
        seed: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """
        Yield output text as it settles. A tail that may still become a
        stop sequence is held back, so the chunks join to generate()'s
        text. A failure ends the stream with one "[Inference Error: ...]"
        chunk.
        """
        request_id = request_id or f"gen-{next(self._ids)}"
        cancel = CancellationToken()
        self._cancel_tokens[request_id] = cancel
        self.active_requests += 1
        t0 = time.perf_counter()
        count = 0
        failed = False
        try:
            params = self._build_params(model_id, max_tokens, temperature, top_p, top_k, stop_sequences, seed)
            async with self.lock:
                session = self.registry.get_session(model_id)
                prompt_tokens = self.tokenizer.encode(prompt)
                async for token_id, piece in self.engine.stream(session, prompt_tokens, params, cancel=cancel):
                    if token_id is not None:
                        count += 1
                    if piece:
                        yield piece
        except (SessionUnavailable, InferenceOutputError, ValueError) as e:
            logger.error(f"Stream {request_id} failed: {e}")
            failed = True
            self.metrics.on_error(self.metric_label(model_id), type(e).__name__)
            yield inference_error(str(e))
        finally:
            self.active_requests -= 1
            self._cancel_tokens.pop(request_id, None)

        if not failed:
            self.requests_served += 1
            self.metrics.on_generation(model_id, count, (time.perf_counter() - t0) * 1000)

    async def chat(self, model_id: str, messages: List[Dict[str, str]], **options) -> ChatResult:
        """Render messages through the chat template, then generate."""
        error = validate_messages(messages)
        if error:
            request_id = options.get("request_id") or f"chat-{next(self._ids)}"
            logger.error(f"Chat {request_id} rejected: {error}")
            return ChatResult(request_id, model_id, inference_error(error), finish_reason="error", error=error)
        prompt = self.chat_template.apply(messages)
        result = await self.generate(model_id, prompt, **options)
        return ChatResult(
            request_id=result.request_id,
            model_id=model_id,
            content=result.text if not result.ok else clean_response(result.text, prompt),
            finish_reason=result.finish_reason,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.tokens_generated,
            error=result.error,
        )

    # =====================================================================
    # Document analysis
    # =====================================================================

    async def analyze_document(self, model_id: str, content: str, kind: str = "summary") -> dict:
        """
        Task prompt per kind, delegated to generate_text.

        Returns {type, content_preview, results: {kind: text}, processing_time, model_used}.
        """
        preview = content_preview(content or "")
        try:
            if kind not in ANALYSIS_KINDS:
                raise ValueError(f"Unknown analysis kind: {kind}")
            if not self.registry.is_loaded(model_id):
                raise SessionUnavailable(model_id)
            prompt = build_analysis_prompt(kind, content)
        except (ValueError, SessionUnavailable) as e:
            logger.error(f"Failed to analyze document with {model_id}: {e}")
            return {
                "type": kind,
                "content_preview": preview,
                "results": {kind: analysis_error(str(e))},
                "processing_time": 0,
                "model_used": model_id,
            }

        t0 = time.perf_counter()
        cfg = self.config
        text = await self.generate_text(
            model_id,
            prompt,
            max_tokens=cfg.summary_max_tokens if kind == "summary" else cfg.analysis_max_tokens,
            temperature=cfg.analysis_temperature,
        )
        return {
            "type": kind,
            "content_preview": preview,
            "results": {kind: text},
            "processing_time": (time.perf_counter() - t0) * 1000,
            "model_used": model_id,
        }
