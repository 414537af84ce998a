"""
pocket-lm :: Test Model Registry

Verifies session bookkeeping:
  - load is idempotent, one live session per id
  - unknown ids and failed allocations return False
  - concurrent loads of one id share a single allocation
  - failed releases are recorded, not forgotten
  - manifest parsing, capabilities, memory estimate

Run:
    python -m pytest tests/test_registry.py -v

INL - 2025
"""

import asyncio
import json
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pocket_lm.core.errors import AlreadyLoaded, LoadFailure, ModelNotFound, SessionUnavailable
from pocket_lm.core.registry import (
    ModelDescriptor, ModelRegistry, SessionState, load_manifest, parse_size_mb,
)

from conftest import CountingFactory, ScriptedHandle


class TestLoad:

    @pytest.mark.asyncio
    async def test_double_load_allocates_once(self, registry, factory):
        assert await registry.load_model("m") is True
        assert await registry.load_model("m") is True
        assert registry.get_loaded_models() == ["m"]
        assert len(factory.calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_id_returns_false(self, registry, factory):
        assert await registry.load_model("m1", "/models/m1") is False
        assert registry.get_loaded_models() == []
        assert factory.calls == []

    @pytest.mark.asyncio
    async def test_acquire_raises(self, registry):
        with pytest.raises(ModelNotFound):
            await registry.acquire("nope")
        await registry.acquire("m")
        with pytest.raises(AlreadyLoaded):
            await registry.acquire("m")

    @pytest.mark.asyncio
    async def test_location_override(self, registry, factory):
        assert await registry.load_model("m", "/tmp/elsewhere")
        assert factory.calls == [("m", "/tmp/elsewhere")]
        assert registry.get_session("m").location == "/tmp/elsewhere"

    @pytest.mark.asyncio
    async def test_default_location_from_descriptor(self, registry, factory):
        await registry.load_model("small")
        assert factory.calls == [("small", "/models/small")]

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_allocation(self, descriptors, tokenizer, script):
        factory = CountingFactory(lambda d: ScriptedHandle(script, tokenizer.vocab_size), delay=0.02)
        registry = ModelRegistry(descriptors, session_factory=factory)

        results = await asyncio.gather(*(registry.load_model("m") for _ in range(5)))

        assert results == [True] * 5
        assert len(factory.calls) == 1
        assert registry.get_loaded_models() == ["m"]

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_failure(self, descriptors, tokenizer, script):
        factory = CountingFactory(lambda d: ScriptedHandle(script, tokenizer.vocab_size), delay=0.02, fail_times=1)
        registry = ModelRegistry(descriptors, session_factory=factory)

        results = await asyncio.gather(registry.load_model("m"), registry.load_model("m"))

        assert results == [False, False]
        assert len(factory.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_load_is_retryable(self, descriptors, tokenizer, script):
        factory = CountingFactory(lambda d: ScriptedHandle(script, tokenizer.vocab_size), fail_times=1)
        registry = ModelRegistry(descriptors, session_factory=factory)

        assert await registry.load_model("m") is False
        assert registry.get_loaded_models() == []
        assert await registry.load_model("m") is True
        assert registry.is_loaded("m")

    @pytest.mark.asyncio
    async def test_sync_factory(self, descriptors, tokenizer, script):
        registry = ModelRegistry(
            descriptors, session_factory=lambda d, loc: ScriptedHandle(script, tokenizer.vocab_size),
        )
        assert await registry.load_model("m")
        assert isinstance(registry.get_session("m").handle, ScriptedHandle)

    @pytest.mark.asyncio
    async def test_factory_returning_none_fails(self, descriptors):
        registry = ModelRegistry(descriptors, session_factory=lambda d, loc: None)
        assert await registry.load_model("m") is False

    @pytest.mark.asyncio
    async def test_missing_artifact_with_default_factory(self, descriptors):
        registry = ModelRegistry(descriptors)
        assert await registry.load_model("m") is False
        with pytest.raises(LoadFailure):
            await registry.acquire("m")


class TestUnload:

    @pytest.mark.asyncio
    async def test_unload_never_loaded(self, registry):
        assert await registry.unload_model("never-loaded") is False
        assert await registry.unload_model("m") is False

    @pytest.mark.asyncio
    async def test_unload_releases_once(self, registry, factory):
        await registry.load_model("m")
        session = registry.get_session("m")

        assert await registry.unload_model("m") is True
        assert await registry.unload_model("m") is False
        assert factory.handles["m"].release_count == 1
        assert session.state is SessionState.RELEASED
        assert not registry.is_loaded("m")

    @pytest.mark.asyncio
    async def test_get_session_after_unload(self, registry):
        await registry.load_model("m")
        await registry.unload_model("m")
        with pytest.raises(SessionUnavailable):
            registry.get_session("m")

    @pytest.mark.asyncio
    async def test_release_failure_recorded(self, descriptors, tokenizer, script):
        factory = CountingFactory(lambda d: ScriptedHandle(script, tokenizer.vocab_size, fail_release=True))
        registry = ModelRegistry(descriptors, session_factory=factory)
        await registry.load_model("m")

        assert await registry.unload_model("m") is False
        assert registry.get_loaded_models() == []
        failures = registry.get_release_failures()
        assert [s.id for s in failures] == ["m"]
        assert failures[0].state is SessionState.RELEASE_FAILED
        assert "device busy" in failures[0].release_error

    @pytest.mark.asyncio
    async def test_reload_after_unload(self, registry, factory):
        await registry.load_model("m")
        await registry.unload_model("m")
        assert await registry.load_model("m") is True
        assert len(factory.calls) == 2


class TestCleanup:

    @pytest.mark.asyncio
    async def test_cleanup_unloads_everything(self, registry):
        await registry.preload(["m", "small"])
        results = await registry.cleanup()
        assert results == {"m": True, "small": True}
        assert registry.get_loaded_models() == []

    @pytest.mark.asyncio
    async def test_cleanup_continues_past_failure(self, descriptors, tokenizer, script):
        factory = CountingFactory(
            lambda d: ScriptedHandle(script, tokenizer.vocab_size, fail_release=(d.id == "m"))
        )
        registry = ModelRegistry(descriptors, session_factory=factory)
        await registry.preload(["m", "small"])

        results = await registry.cleanup()

        assert results == {"m": False, "small": True}
        assert registry.get_loaded_models() == []
        assert factory.handles["small"].release_count == 1

    @pytest.mark.asyncio
    async def test_preload_reports_each(self, registry):
        results = await registry.preload(["m", "ghost"])
        assert results == {"m": True, "ghost": False}


class TestDescriptors:

    def test_duplicate_ids_rejected(self, descriptors):
        with pytest.raises(ValueError):
            ModelRegistry(descriptors + [descriptors[0]], session_factory=lambda d, loc: object())

    def test_require_descriptor(self, registry):
        assert registry.require_descriptor("m").display_name == "Main"
        with pytest.raises(ModelNotFound) as exc:
            registry.require_descriptor("nope")
        assert "Available: m, small" in str(exc.value)

    def test_find_by_capability(self, registry):
        assert [d.id for d in registry.find_by_capability("text-generation")] == ["m", "small"]
        assert [d.id for d in registry.find_by_capability("summarization")] == ["m"]
        assert registry.find_by_capability("vision") == []

    @pytest.mark.asyncio
    async def test_recommended_prefers_loaded(self, registry):
        assert registry.recommended_model("text-generation") == "m"
        await registry.load_model("small")
        assert registry.recommended_model("text-generation") == "small"
        assert registry.recommended_model("vision") is None

    @pytest.mark.asyncio
    async def test_memory_estimate(self, registry):
        assert registry.memory_estimate_mb() == {}
        await registry.preload(["m", "small"])
        usage = registry.memory_estimate_mb()
        assert usage["m"] == 637.0
        assert usage["small"] == pytest.approx(2252.8)

    @pytest.mark.parametrize("size, expected", [
        ("637MB", 637.0),
        ("2.2GB", 2252.8),
        ("1 gb", 1024.0),
        ("", None),
        ("large", None),
    ])
    def test_parse_size(self, size, expected):
        if expected is None:
            assert parse_size_mb(size) is None
        else:
            assert parse_size_mb(size) == pytest.approx(expected)


class TestManifest:

    def test_manifest_camel_case(self, tmp_path):
        path = tmp_path / "models.json"
        path.write_text(json.dumps({"models": [
            {
                "id": "flan-t5-small",
                "name": "FLAN-T5 Small",
                "path": "/models/flan-t5-small",
                "capabilities": ["summarization", "qa"],
                "maxTokens": 512,
                "size": "308MB",
                "description": "instruction tuned",
            },
            {"name": "bare", "file": "/models/bare.ts"},
        ]}))

        models = load_manifest(str(path))

        assert [m.id for m in models] == ["flan-t5-small", "bare"]
        first = models[0]
        assert first.display_name == "FLAN-T5 Small"
        assert first.artifact_location == "/models/flan-t5-small"
        assert first.capabilities == frozenset({"summarization", "qa"})
        assert first.token_limit == 512
        assert models[1].token_limit == 2048
        assert models[1].artifact_location == "/models/bare.ts"

    def test_manifest_bare_list(self, tmp_path):
        path = tmp_path / "models.json"
        path.write_text(json.dumps([{"id": "a", "path": "/a"}]))
        registry = ModelRegistry.from_manifest(str(path), session_factory=lambda d, loc: object())
        assert [d.id for d in registry.list_descriptors()] == ["a"]

    def test_entry_without_location_rejected(self):
        with pytest.raises(ValueError):
            ModelDescriptor.from_dict({"id": "a"})

    def test_to_dict_round_trip(self, descriptors):
        d = descriptors[0]
        assert ModelDescriptor.from_dict(d.to_dict()) == d


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
