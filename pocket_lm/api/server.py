"""
pocket-lm :: API Server (aiohttp)

HTTP host surface over one InferenceWorker.
JSON in, JSON out; generation failures stay in-band ("[Inference Error: ...]")
exactly as the worker returns them, request validation failures are 400s.

Endpoints:
    GET  /health                      → liveness + loaded models
    GET  /v1/models                   → registered models
    GET  /v1/models/{model_id}        → one descriptor (+ loaded flag)
    POST /v1/models/{model_id}/load   → {"loaded": bool}
    POST /v1/models/{model_id}/unload → {"unloaded": bool}
    POST /v1/generate                 → text generation (sync + SSE streaming)
    POST /v1/chat                     → chat messages through the template
    POST /v1/analyze                  → document analysis
    POST /v1/cancel/{request_id}      → flag a running generation
    POST /v1/cleanup                  → unload everything
    GET  /v1/stats                    → worker stats + latency percentiles
    GET  /metrics                     → Prometheus exposition

INL - 2025
"""

import hmac
import json
import math
import time
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field
from collections import deque

from aiohttp import web

from pocket_lm.core.logging import get_logger
from pocket_lm.core.prompts import ANALYSIS_KINDS, validate_messages
from pocket_lm.core.sampling import SamplingParams
from pocket_lm.engine.worker import InferenceWorker

logger = get_logger("pocket_lm.server")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}
CORS_MAX_AGE = 600


def error_response(message: str, status: int = 400, error_type: str = "invalid_request_error") -> web.Response:
    return web.json_response({"error": {"message": message, "type": error_type}}, status=status)


@dataclass
class GenerateRequest:
    model: str
    prompt: str = ""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop: List[str] = field(default_factory=list)
    seed: Optional[int] = None
    timeout: Optional[float] = None
    request_id: Optional[str] = None
    stream: bool = False

    @staticmethod
    def from_body(body: Dict[str, Any]) -> "GenerateRequest":
        stop = body.get("stop") or []
        if isinstance(stop, str):
            stop = [stop]
        return GenerateRequest(
            model=body.get("model") or "",
            prompt=body.get("prompt") or "",
            max_tokens=body.get("max_tokens"),
            temperature=body.get("temperature"),
            top_p=body.get("top_p"),
            top_k=body.get("top_k"),
            stop=stop,
            seed=body.get("seed"),
            timeout=body.get("timeout"),
            request_id=body.get("request_id"),
            stream=bool(body.get("stream", False)),
        )

    def validate(self, require_prompt: bool = True) -> Optional[str]:
        """Validate request parameters. Returns error message or None."""
        if not isinstance(self.model, str) or not self.model:
            return "Missing 'model' field"
        if require_prompt and (not isinstance(self.prompt, str) or not self.prompt.strip()):
            return "prompt must not be empty"
        if not isinstance(self.stop, list):
            return "stop must be a string or a list of strings"
        for name in ("temperature", "top_p", "timeout"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
                return f"{name} must be a number"
        for name in ("max_tokens", "top_k", "seed"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                return f"{name} must be an integer"
        if self.timeout is not None and self.timeout <= 0:
            return "timeout must be > 0"
        # Only the fields the caller actually set are range-checked here
        candidate = SamplingParams(
            max_tokens=self.max_tokens if self.max_tokens is not None else 1,
            temperature=self.temperature if self.temperature is not None else 1.0,
            top_p=self.top_p,
            top_k=self.top_k,
            stop_sequences=self.stop,
        )
        return candidate.validate()

    def options(self) -> dict:
        """Keyword options for InferenceWorker.generate / chat."""
        return {
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "stop_sequences": self.stop or None,
            "seed": self.seed,
            "timeout_s": self.timeout,
            "request_id": self.request_id,
        }


class LatencyTracker:
    """
    Sliding windows of request latency, per route and per model.

    Model keys come from InferenceWorker.metric_label, so ids that were
    never registered share one "unknown" window.
    """

    QUANTILES = (("p50_ms", 0.50), ("p95_ms", 0.95), ("p99_ms", 0.99))

    def __init__(self, window: int = 1000):
        self.window = window
        self._overall: deque = deque(maxlen=window)
        self._routes: Dict[str, deque] = {}
        self._models: Dict[str, deque] = {}

    def _window(self, table: Dict[str, deque], key: str) -> deque:
        if key not in table:
            table[key] = deque(maxlen=self.window)
        return table[key]

    def record(self, route: str, model_key: str, latency_ms: float):
        self._overall.append(latency_ms)
        self._window(self._routes, route).append(latency_ms)
        self._window(self._models, model_key).append(latency_ms)

    @classmethod
    def summarize(cls, samples) -> Dict[str, float]:
        """Nearest-rank quantiles over one window."""
        data = sorted(samples)
        n = len(data)
        out = {"count": n}
        for name, q in cls.QUANTILES:
            out[name] = round(data[max(math.ceil(q * n) - 1, 0)], 2) if n else 0.0
        out["avg_ms"] = round(sum(data) / n, 2) if n else 0.0
        return out

    def snapshot(self) -> Dict[str, Any]:
        return {
            "overall": self.summarize(self._overall),
            "routes": {route: self.summarize(w) for route, w in self._routes.items()},
            "models": {model: self.summarize(w) for model, w in self._models.items()},
        }


class PocketServer:
    """
    aiohttp front for an InferenceWorker.

    The worker owns every model operation; handlers only parse,
    validate and serialize. Worker startup/cleanup follow the app
    lifecycle.
    """

    def __init__(
        self,
        worker: InferenceWorker,
        host: str = "127.0.0.1",
        port: int = 8000,
        api_key: Optional[str] = None,
        preload: Optional[List[str]] = None,
    ):
        self.worker = worker
        self.host = host
        self.port = port
        self.api_key = api_key
        self.preload = list(preload or [])
        self._start_time = time.monotonic()
        self._latency_tracker = LatencyTracker()

    def _record_latency(self, route: str, model_id: str, t0: float):
        self._latency_tracker.record(
            route, self.worker.metric_label(model_id), (time.perf_counter() - t0) * 1000,
        )

    async def _read_json(self, request: web.Request):
        """Parsed body, or None when the body is not a JSON object."""
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return body if isinstance(body, dict) else None

    # =====================================================================
    # aiohttp handlers
    # =====================================================================

    async def handle_health(self, request: web.Request) -> web.Response:
        """GET /health"""
        return web.json_response({
            "status": "ok",
            "uptime_seconds": int(time.monotonic() - self._start_time),
            "loaded_models": await self.worker.get_loaded_models(),
            "active_requests": self.worker.active_requests,
        })

    async def handle_models(self, request: web.Request) -> web.Response:
        """GET /v1/models"""
        loaded = set(await self.worker.get_loaded_models())
        data = []
        for d in self.worker.registry.list_descriptors():
            entry = d.to_dict()
            entry["loaded"] = d.id in loaded
            data.append(entry)
        return web.json_response({"object": "list", "data": data})

    async def handle_model_info(self, request: web.Request) -> web.Response:
        """GET /v1/models/{model_id}"""
        model_id = request.match_info["model_id"]
        info = await self.worker.get_model_info(model_id)
        if info is None:
            return error_response(f"Unknown model: {model_id}", status=404, error_type="not_found_error")
        return web.json_response(info)

    async def handle_load(self, request: web.Request) -> web.Response:
        """POST /v1/models/{model_id}/load  body: {"location": optional}"""
        model_id = request.match_info["model_id"]
        location = None
        if request.can_read_body:
            body = await self._read_json(request)
            if body is None:
                return error_response("Invalid JSON in request body")
            location = body.get("location")
            if location is not None and not isinstance(location, str):
                return error_response("location must be a string")
        if self.worker.registry.get_descriptor(model_id) is None:
            return error_response(f"Unknown model: {model_id}", status=404, error_type="not_found_error")
        ok = await self.worker.load_model(model_id, location)
        return web.json_response({"model": model_id, "loaded": ok})

    async def handle_unload(self, request: web.Request) -> web.Response:
        """POST /v1/models/{model_id}/unload"""
        model_id = request.match_info["model_id"]
        ok = await self.worker.unload_model(model_id)
        return web.json_response({"model": model_id, "unloaded": ok})

    async def handle_generate(self, request: web.Request) -> web.StreamResponse:
        """POST /v1/generate"""
        body = await self._read_json(request)
        if body is None:
            return error_response("Invalid JSON in request body")
        req = GenerateRequest.from_body(body)
        error = req.validate()
        if error:
            return error_response(error)

        if req.stream:
            return await self._stream(request, req)

        t0 = time.perf_counter()
        result = await self.worker.generate(req.model, req.prompt, **req.options())
        self._record_latency("/v1/generate", req.model, t0)
        return web.json_response(result.to_dict())

    async def _stream(self, request: web.Request, req: GenerateRequest) -> web.StreamResponse:
        """Server-sent events: one data line per token, then [DONE]."""
        response = web.StreamResponse()
        response.content_type = "text/event-stream"
        await response.prepare(request)
        options = req.options()
        options.pop("timeout_s")
        try:
            async for piece in self.worker.generate_stream(req.model, req.prompt, **options):
                chunk = {"model": req.model, "text": piece}
                await response.write(f"data: {json.dumps(chunk)}\n\n".encode())
            await response.write(b"data: [DONE]\n\n")
        except (ConnectionResetError, ConnectionError):
            logger.info(f"Client disconnected from stream for {req.model}")
            if req.request_id:
                self.worker.cancel(req.request_id)
        return response

    async def handle_chat(self, request: web.Request) -> web.Response:
        """POST /v1/chat  body: {"model", "messages": [{"role", "content"}], ...}"""
        body = await self._read_json(request)
        if body is None:
            return error_response("Invalid JSON in request body")
        req = GenerateRequest.from_body(body)
        error = req.validate(require_prompt=False) or validate_messages(body.get("messages"))
        if error:
            return error_response(error)

        t0 = time.perf_counter()
        result = await self.worker.chat(req.model, body["messages"], **req.options())
        self._record_latency("/v1/chat", req.model, t0)
        return web.json_response(result.to_dict())

    async def handle_analyze(self, request: web.Request) -> web.Response:
        """POST /v1/analyze  body: {"model", "content", "type"}"""
        body = await self._read_json(request)
        if body is None:
            return error_response("Invalid JSON in request body")
        model_id = body.get("model")
        content = body.get("content")
        kind = body.get("type", "summary")
        if not isinstance(model_id, str) or not model_id:
            return error_response("Missing 'model' field")
        if not isinstance(content, str) or not content:
            return error_response("Missing 'content' field")
        if kind not in ANALYSIS_KINDS:
            return error_response(f"type must be one of {', '.join(ANALYSIS_KINDS)}")

        t0 = time.perf_counter()
        analysis = await self.worker.analyze_document(model_id, content, kind)
        self._record_latency("/v1/analyze", model_id, t0)
        return web.json_response(analysis)

    async def handle_cancel(self, request: web.Request) -> web.Response:
        """POST /v1/cancel/{request_id}"""
        request_id = request.match_info["request_id"]
        if not self.worker.cancel(request_id):
            return error_response(f"No active request {request_id}", status=404, error_type="not_found_error")
        return web.json_response({"request_id": request_id, "cancelled": True})

    async def handle_cleanup(self, request: web.Request) -> web.Response:
        """POST /v1/cleanup"""
        await self.worker.cleanup()
        return web.json_response({
            "status": "ok",
            "loaded_models": await self.worker.get_loaded_models(),
        })

    async def handle_stats(self, request: web.Request) -> web.Response:
        """GET /v1/stats"""
        stats = self.worker.get_stats()
        stats["latency"] = self._latency_tracker.snapshot()
        stats["uptime_seconds"] = int(time.monotonic() - self._start_time)
        return web.json_response(stats)

    async def handle_metrics(self, request: web.Request) -> web.Response:
        """GET /metrics"""
        return web.Response(body=self.worker.metrics.export(), content_type="text/plain")

    # =====================================================================
    # Middlewares + app
    # =====================================================================

    @web.middleware
    async def cors_middleware(self, request, handler):
        """Open CORS for browser hosts; preflights are answered here."""
        if request.method == "OPTIONS" and "Access-Control-Request-Method" in request.headers:
            resp = web.Response(status=204)
            resp.headers["Access-Control-Max-Age"] = str(CORS_MAX_AGE)
        else:
            resp = await handler(request)
        resp.headers.update(CORS_HEADERS)
        return resp

    @web.middleware
    async def auth_middleware(self, request, handler):
        """Bearer token on the /v1 API; /health and /metrics stay open."""
        if request.path.startswith("/v1/") and request.method != "OPTIONS":
            scheme, _, token = request.headers.get("Authorization", "").partition(" ")
            if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip().encode(), self.api_key.encode()):
                resp = error_response("Invalid API key", status=401, error_type="authentication_error")
                resp.headers["WWW-Authenticate"] = 'Bearer realm="pocket-lm"'
                return resp
        return await handler(request)

    @web.middleware
    async def error_middleware(self, request, handler):
        """Unexpected handler failures become JSON 500s, never tracebacks."""
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"{request.method} {request.path} failed: {e}", exc_info=True)
            return error_response(str(e) or type(e).__name__, status=500, error_type="server_error")

    def create_app(self) -> web.Application:
        """Create aiohttp application with routes and worker lifecycle."""
        middlewares = [self.cors_middleware, self.error_middleware]
        if self.api_key:
            middlewares.append(self.auth_middleware)
        app = web.Application(middlewares=middlewares)
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/metrics", self.handle_metrics)
        app.router.add_get("/v1/models", self.handle_models)
        app.router.add_get("/v1/models/{model_id}", self.handle_model_info)
        app.router.add_post("/v1/models/{model_id}/load", self.handle_load)
        app.router.add_post("/v1/models/{model_id}/unload", self.handle_unload)
        app.router.add_post("/v1/generate", self.handle_generate)
        app.router.add_post("/v1/chat", self.handle_chat)
        app.router.add_post("/v1/analyze", self.handle_analyze)
        app.router.add_post("/v1/cancel/{request_id}", self.handle_cancel)
        app.router.add_post("/v1/cleanup", self.handle_cleanup)
        app.router.add_get("/v1/stats", self.handle_stats)

        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_startup(self, app):
        await self.worker.initialize()
        if self.preload:
            results = await self.worker.registry.preload(self.preload)
            self.worker.metrics.set_loaded(len(self.worker.registry.get_loaded_models()))
            loaded = [mid for mid, ok in results.items() if ok]
            logger.info(f"Preloaded {len(loaded)}/{len(results)} model(s)")

    async def _on_cleanup(self, app):
        """Release every session when the server stops."""
        logger.info("Server cleanup: unloading models...")
        await self.worker.cleanup()
        logger.info("Server cleanup complete")

    def run(self):
        logger.info(f"pocket-lm :: {len(self.worker.registry.list_descriptors())} model(s) registered")
        logger.info(f"  http://{self.host}:{self.port}")
        logger.info(f"  POST /v1/generate | POST /v1/chat | POST /v1/analyze | GET /health")
        web.run_app(self.create_app(), host=self.host, port=self.port, print=None)
