"""
pocket-lm :: Artifact Loader

Location string → session handle.

Supported artifacts:
  - TorchScript file (.pt / .ts / .torchscript / .jit)
  - Directory with config.json + weights
      weights: model.safetensors, *.safetensors, or *.pt / *.pth / *.bin
  - Single .safetensors file with config.json beside it

Every handle exposes:
  run(input_ids)  → {"logits": (1, seq, vocab)}
  release()       → drop weights; later run() raises SessionUnavailable

INL - 2025
"""

import gc
import torch
from typing import Dict, Optional, Any
from pathlib import Path

from pocket_lm.core.errors import LoadFailure, SessionUnavailable
from pocket_lm.core.logging import get_logger
from pocket_lm.models.tiny_lm import TinyCausalLM, TinyLMConfig

logger = get_logger("pocket_lm.loader")

TORCHSCRIPT_SUFFIXES = (".ts", ".torchscript", ".jit")
PYTORCH_SUFFIXES = (".pt", ".pth", ".bin")


# =========================================================================
# Handles
# =========================================================================

class TorchSessionHandle:
    """Owns a module for one registry entry. Not shared."""

    def __init__(self, module: Any, model_id: str, device: str = "cpu"):
        self.module = module
        self.model_id = model_id
        self.device = device

    @property
    def released(self) -> bool:
        return self.module is None

    def run(self, input_ids: torch.Tensor) -> Dict[str, torch.Tensor]:
        """Forward pass over the whole sequence."""
        if self.module is None:
            raise SessionUnavailable(self.model_id, reason="session released")
        with torch.no_grad():
            out = self.module(input_ids.to(self.device))
        return _as_output_dict(out)

    def release(self):
        if self.module is None:
            raise SessionUnavailable(self.model_id, reason="session already released")
        self.module = None
        gc.collect()
        if self.device.startswith("cuda") and torch.cuda.is_available():
            torch.cuda.empty_cache()


def _as_output_dict(out: Any) -> Dict[str, torch.Tensor]:
    """Normalize module outputs: tensor, tuple, dict, or object with .logits."""
    if isinstance(out, torch.Tensor):
        return {"logits": out}
    if isinstance(out, dict):
        return dict(out)
    if isinstance(out, (tuple, list)):
        return {"logits": out[0]} if out and isinstance(out[0], torch.Tensor) else {}
    logits = getattr(out, "logits", None)
    return {"logits": logits} if isinstance(logits, torch.Tensor) else {}


# =========================================================================
# State dict loading (safetensors + PyTorch)
# =========================================================================

def _load_safetensors_file(filepath: str) -> Dict[str, torch.Tensor]:
    """Load a single .safetensors file."""
    from safetensors.torch import load_file
    return load_file(filepath)


def _load_pytorch_file(filepath: str) -> Dict[str, torch.Tensor]:
    """Load a PyTorch checkpoint file and unwrap nested state dicts."""
    state_dict = torch.load(filepath, map_location="cpu", weights_only=True)
    if isinstance(state_dict, dict):
        if "state_dict" in state_dict:
            state_dict = state_dict["state_dict"]
        elif "model" in state_dict and isinstance(state_dict["model"], dict):
            state_dict = state_dict["model"]
    return state_dict


def _load_from_directory(dir_path: Path) -> Dict[str, torch.Tensor]:
    """
    Load weights from an artifact directory. Priority:
      1. model.safetensors
      2. *.safetensors (merged)
      3. *.pt / *.pth / *.bin
    """
    single = dir_path / "model.safetensors"
    if single.exists():
        return _load_safetensors_file(str(single))

    st_files = sorted(dir_path.glob("*.safetensors"))
    if st_files:
        state_dict = {}
        for f in st_files:
            state_dict.update(_load_safetensors_file(str(f)))
        return state_dict

    pt_files = []
    for suffix in PYTORCH_SUFFIXES:
        pt_files += sorted(dir_path.glob(f"*{suffix}"))
    if pt_files:
        state_dict = {}
        for f in pt_files:
            state_dict.update(_load_pytorch_file(str(f)))
        return state_dict

    raise LoadFailure(f"No weight files found in {dir_path}")


def load_tiny_lm(path: Path, device: str = "cpu") -> TinyCausalLM:
    """Build a TinyCausalLM from a directory (or a .safetensors file with config.json beside it)."""
    config_dir = path if path.is_dir() else path.parent
    config_path = config_dir / "config.json"
    if not config_path.exists():
        raise LoadFailure(f"config.json not found in {config_dir}")

    config = TinyLMConfig.from_json(str(config_path))
    model = TinyCausalLM(config)

    if path.is_dir():
        state_dict = _load_from_directory(path)
    else:
        state_dict = _load_safetensors_file(str(path))

    missing, unexpected = model.load_state_dict(state_dict, strict=False)
    if missing:
        raise LoadFailure(f"Checkpoint is missing {len(missing)} tensors, e.g. {missing[0]}")
    if unexpected:
        logger.warning(f"Ignoring {len(unexpected)} unexpected tensors, e.g. {unexpected[0]}")

    return model.to(device).eval()


def save_tiny_lm(model: TinyCausalLM, directory: str):
    """Write config.json + model.safetensors."""
    from safetensors.torch import save_file

    out = Path(directory)
    out.mkdir(parents=True, exist_ok=True)
    model.config.to_json(str(out / "config.json"))
    state_dict = {k: v.detach().contiguous().cpu() for k, v in model.state_dict().items()}
    save_file(state_dict, str(out / "model.safetensors"))


def open_session(descriptor: Any, location: str, device: str = "cpu") -> TorchSessionHandle:
    """
    Default session factory for ModelRegistry.

    Raises LoadFailure for missing or unreadable artifacts.
    """
    model_id = getattr(descriptor, "id", str(descriptor))
    path = Path(location)
    if not path.exists():
        raise LoadFailure(f"Model artifact not found: {location}")

    try:
        if path.is_file() and (path.suffix in TORCHSCRIPT_SUFFIXES or path.suffix in PYTORCH_SUFFIXES):
            module = torch.jit.load(str(path), map_location=device)
            module.eval()
            logger.info(f"Loaded TorchScript artifact for {model_id}: {path}")
        else:
            module = load_tiny_lm(path, device=device)
            n_params = sum(p.numel() for p in module.parameters())
            logger.info(f"Loaded {module.config.model_type} for {model_id}: {n_params} params")
    except LoadFailure:
        raise
    except Exception as e:
        raise LoadFailure(f"Could not load {location}: {e}") from e

    return TorchSessionHandle(module, model_id=model_id, device=device)


def device_for(preferred: Optional[str] = None) -> str:
    """Resolve "auto" (or None) to cuda when available, else cpu."""
    if preferred and preferred != "auto":
        return preferred
    return "cuda" if torch.cuda.is_available() else "cpu"
