"""
pocket-lm :: Prometheus Metrics

Per-worker metrics on a private CollectorRegistry, so several workers
(or tests) in one process never collide on metric names.

Metrics:
  - pocket_lm_requests_total{model}: generations served
  - pocket_lm_tokens_generated_total{model}: tokens produced
  - pocket_lm_errors_total{model,kind}: in-band failures
  - pocket_lm_request_duration_seconds{model}: latency histogram
  - pocket_lm_loaded_models: sessions currently live

INL - 2025
"""

from typing import Dict

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

# Label for ids that were never registered
UNKNOWN_MODEL = "unknown"


class WorkerMetrics:
    """Prometheus metrics + running per-model summary."""

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()

        self.requests_total = Counter(
            "pocket_lm_requests_total", "Generations served", ["model"], registry=self.registry,
        )
        self.tokens_generated = Counter(
            "pocket_lm_tokens_generated_total", "Tokens generated", ["model"], registry=self.registry,
        )
        self.errors_total = Counter(
            "pocket_lm_errors_total", "Generation failures returned in-band", ["model", "kind"],
            registry=self.registry,
        )
        self.request_duration = Histogram(
            "pocket_lm_request_duration_seconds",
            "Generation latency",
            ["model"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )
        self.loaded_models = Gauge(
            "pocket_lm_loaded_models", "Sessions currently loaded", registry=self.registry,
        )

        # model → [inferences, total_ms, total_tokens]
        self._summary: Dict[str, list] = {}

    def on_generation(self, model_id: str, tokens: int, elapsed_ms: float):
        self.requests_total.labels(model=model_id).inc()
        self.tokens_generated.labels(model=model_id).inc(tokens)
        self.request_duration.labels(model=model_id).observe(elapsed_ms / 1000)
        entry = self._summary.setdefault(model_id, [0, 0.0, 0])
        entry[0] += 1
        entry[1] += elapsed_ms
        entry[2] += tokens

    def on_error(self, model_id: str, kind: str):
        self.errors_total.labels(model=model_id, kind=kind).inc()

    def set_loaded(self, count: int):
        self.loaded_models.set(count)

    def summary(self) -> Dict[str, dict]:
        """Per-model inference count, mean latency, tokens and throughput."""
        out = {}
        for model_id, (n, total_ms, tokens) in self._summary.items():
            out[model_id] = {
                "total_inferences": n,
                "average_latency_ms": round(total_ms / n, 2) if n else 0.0,
                "total_tokens": tokens,
                "tokens_per_second": round(tokens / (total_ms / 1000), 2) if total_ms > 0 else 0.0,
            }
        return out

    def export(self) -> bytes:
        """Prometheus text exposition format."""
        return generate_latest(self.registry)
