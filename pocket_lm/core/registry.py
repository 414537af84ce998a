"""
pocket-lm :: Model Registry

Descriptors are registered once, when the registry is built
(directly or from a JSON manifest). Sessions come and go:

    load_model(id)    → allocate handle via session_factory, cache it
    unload_model(id)  → release handle exactly once, drop it
    cleanup()         → unload everything, best-effort

At most one live session per id. Concurrent loads of the same id
share one in-flight future instead of allocating twice.

load/unload never raise: they return bool and log the reason.
acquire() is the raising form of load_model.

INL - 2025
"""

import asyncio
import enum
import inspect
import json
import re
import time
from typing import Callable, Dict, FrozenSet, List, Optional, Any
from dataclasses import dataclass, field

from pocket_lm.core.errors import AlreadyLoaded, LoadFailure, ModelNotFound, SessionUnavailable
from pocket_lm.core.logging import get_logger

logger = get_logger("pocket_lm.registry")


@dataclass(frozen=True)
class ModelDescriptor:
    """A registered model. Immutable after registration."""
    id: str
    display_name: str
    artifact_location: str
    capabilities: FrozenSet[str] = frozenset()
    token_limit: int = 2048
    quantization: str = "fp32"
    description: str = ""
    size: str = ""

    @staticmethod
    def from_dict(data: dict) -> "ModelDescriptor":
        """Build from a manifest entry. Accepts the manifest's camelCase keys."""
        model_id = data.get("id") or data.get("name")
        if not model_id:
            raise ValueError(f"Manifest entry has no id: {data}")
        location = data.get("artifact_location") or data.get("path") or data.get("file") or data.get("url")
        if not location:
            raise ValueError(f"Manifest entry {model_id} has no artifact location")
        return ModelDescriptor(
            id=model_id,
            display_name=data.get("display_name") or data.get("displayName") or data.get("name") or model_id,
            artifact_location=location,
            capabilities=frozenset(data.get("capabilities", [])),
            token_limit=int(data.get("token_limit") or data.get("maxTokens") or 2048),
            quantization=data.get("quantization", "fp32"),
            description=data.get("description", ""),
            size=data.get("size", ""),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "artifact_location": self.artifact_location,
            "capabilities": sorted(self.capabilities),
            "token_limit": self.token_limit,
            "quantization": self.quantization,
            "description": self.description,
            "size": self.size,
        }


class SessionState(enum.Enum):
    LOADED = "loaded"
    RELEASED = "released"
    RELEASE_FAILED = "release_failed"


@dataclass
class ModelSession:
    """Live session. The handle is owned by the registry entry."""
    id: str
    handle: Any
    location: str
    state: SessionState = SessionState.LOADED
    loaded_at: float = field(default_factory=time.time)
    release_error: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.state is SessionState.LOADED


def load_manifest(path: str) -> List[ModelDescriptor]:
    """
    Read a model manifest.

    Format: {"models": [{"id": ..., "path": ..., "capabilities": [...]}, ...]}
    A bare list of entries is accepted too.
    """
    with open(path, "r") as f:
        data = json.load(f)
    entries = data.get("models", []) if isinstance(data, dict) else data
    return [ModelDescriptor.from_dict(e) for e in entries]


_SIZE_RE = re.compile(r"(\d+\.?\d*)\s*(GB|MB)", re.IGNORECASE)


def parse_size_mb(size: str) -> Optional[float]:
    """Parse "637MB" → 637.0, "2.2GB" → 2252.8. None if unparseable."""
    match = _SIZE_RE.search(size or "")
    if not match:
        return None
    value = float(match.group(1))
    return value * 1024 if match.group(2).upper() == "GB" else value


SessionFactory = Callable[[ModelDescriptor, str], Any]


class ModelRegistry:
    """
    Registry of descriptors and live sessions.

    One instance per worker. session_factory(descriptor, location) returns
    an opaque handle (sync or awaitable); handles may expose release().
    """

    def __init__(
        self,
        descriptors: Optional[List[ModelDescriptor]] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self._descriptors: Dict[str, ModelDescriptor] = {}
        for d in descriptors or []:
            if d.id in self._descriptors:
                raise ValueError(f"Duplicate model id: {d.id}")
            self._descriptors[d.id] = d

        if session_factory is None:
            from pocket_lm.core.loader import open_session
            session_factory = open_session
        self._session_factory = session_factory

        self._sessions: Dict[str, ModelSession] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._release_failures: List[ModelSession] = []

    @staticmethod
    def from_manifest(path: str, session_factory: Optional[SessionFactory] = None) -> "ModelRegistry":
        return ModelRegistry(load_manifest(path), session_factory=session_factory)

    # =====================================================================
    # Descriptors
    # =====================================================================

    def get_descriptor(self, model_id: str) -> Optional[ModelDescriptor]:
        return self._descriptors.get(model_id)

    def require_descriptor(self, model_id: str) -> ModelDescriptor:
        if model_id not in self._descriptors:
            raise ModelNotFound(model_id, self._descriptors.keys())
        return self._descriptors[model_id]

    def list_descriptors(self) -> List[ModelDescriptor]:
        return list(self._descriptors.values())

    def find_by_capability(self, capability: str) -> List[ModelDescriptor]:
        return [d for d in self._descriptors.values() if capability in d.capabilities]

    def recommended_model(self, capability: str) -> Optional[str]:
        """First registered model offering the capability, loaded ones preferred."""
        candidates = self.find_by_capability(capability)
        for d in candidates:
            if self.is_loaded(d.id):
                return d.id
        return candidates[0].id if candidates else None

    # =====================================================================
    # Sessions
    # =====================================================================

    def is_loaded(self, model_id: str) -> bool:
        session = self._sessions.get(model_id)
        return session is not None and session.is_live

    def get_loaded_models(self) -> List[str]:
        return [mid for mid, s in self._sessions.items() if s.is_live]

    def get_session(self, model_id: str) -> ModelSession:
        """Live session for an id. Raises SessionUnavailable otherwise."""
        session = self._sessions.get(model_id)
        if session is None:
            raise SessionUnavailable(model_id)
        if not session.is_live:
            raise SessionUnavailable(model_id, reason=f"session {session.state.value}")
        return session

    def get_release_failures(self) -> List[ModelSession]:
        """Sessions whose release raised. Kept for operator visibility."""
        return list(self._release_failures)

    async def load_model(self, model_id: str, location: Optional[str] = None) -> bool:
        """
        Allocate a session for model_id.

        Returns True when loaded (including already loaded), False on an
        unknown id or an allocation failure. Never raises.
        """
        try:
            await self.acquire(model_id, location)
        except AlreadyLoaded:
            logger.info(f"Model {model_id} already loaded")
            return True
        except (ModelNotFound, LoadFailure) as e:
            logger.error(f"Cannot load {model_id}: {e}")
            return False
        return True

    async def acquire(self, model_id: str, location: Optional[str] = None) -> ModelSession:
        """
        Raising variant of load_model.

        Raises:
            ModelNotFound: no descriptor registered under model_id
            AlreadyLoaded: a live session exists already
            LoadFailure: the session factory failed
        """
        descriptor = self.require_descriptor(model_id)
        if self.is_loaded(model_id):
            raise AlreadyLoaded(model_id)

        inflight = self._inflight.get(model_id)
        if inflight is not None:
            logger.debug(f"Model {model_id} load in flight, awaiting it")
            return await asyncio.shield(inflight)

        future = asyncio.get_running_loop().create_future()
        self._inflight[model_id] = future
        try:
            session = await self._allocate(descriptor, location or descriptor.artifact_location)
            future.set_result(session)
            return session
        except LoadFailure as e:
            future.set_exception(e)
            future.exception()  # mark retrieved; waiters re-raise on await
            raise
        finally:
            self._inflight.pop(model_id, None)
            if not future.done():
                future.set_exception(LoadFailure(f"Load of {model_id} was interrupted"))
                future.exception()

    async def _allocate(self, descriptor: ModelDescriptor, location: str) -> ModelSession:
        t0 = time.perf_counter()
        logger.info(f"Loading model {descriptor.id} from {location}")
        try:
            handle = self._session_factory(descriptor, location)
            if inspect.isawaitable(handle):
                handle = await handle
        except asyncio.CancelledError:
            raise
        except LoadFailure:
            raise
        except Exception as e:
            raise LoadFailure(f"{type(e).__name__}: {e}") from e
        if handle is None:
            raise LoadFailure("session factory returned nothing")

        session = ModelSession(id=descriptor.id, handle=handle, location=location)
        self._sessions[descriptor.id] = session
        logger.info(f"Model {descriptor.id} loaded in {(time.perf_counter() - t0) * 1000:.1f}ms")
        return session

    async def unload_model(self, model_id: str) -> bool:
        """
        Release a session.

        False if nothing is loaded under model_id, or if release failed.
        A failed release is recorded (state RELEASE_FAILED) rather than
        silently forgotten; the session is no longer served either way.
        """
        session = self._sessions.get(model_id)
        if session is None or not session.is_live:
            logger.warning(f"Model {model_id} not loaded, nothing to unload")
            return False

        del self._sessions[model_id]
        try:
            await _release_handle(session.handle)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            session.state = SessionState.RELEASE_FAILED
            session.release_error = str(e)
            self._release_failures.append(session)
            logger.error(
                f"RELEASE FAILED for model {model_id}: {e} (handle may leak, "
                f"{len(self._release_failures)} failed release(s) recorded)",
                exc_info=True,
            )
            return False

        session.state = SessionState.RELEASED
        session.handle = None
        logger.info(f"Model {model_id} unloaded")
        return True

    async def preload(self, model_ids: List[str]) -> Dict[str, bool]:
        """Load several models; individual failures are logged, not raised."""
        results = {}
        for model_id in model_ids:
            results[model_id] = await self.load_model(model_id)
        return results

    async def cleanup(self) -> Dict[str, bool]:
        """Unload every session. One failure never aborts the sweep."""
        results = {}
        for model_id in list(self._sessions.keys()):
            try:
                results[model_id] = await self.unload_model(model_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Cleanup: unloading {model_id} failed: {e}")
                results[model_id] = False
        return results

    def memory_estimate_mb(self) -> Dict[str, float]:
        """Approximate memory per loaded model, from descriptor size strings."""
        usage = {}
        for model_id in self.get_loaded_models():
            size = parse_size_mb(self._descriptors[model_id].size)
            if size is not None:
                usage[model_id] = size
        return usage


async def _release_handle(handle: Any):
    release = getattr(handle, "release", None)
    if release is None:
        return
    result = release()
    if inspect.isawaitable(result):
        await result
