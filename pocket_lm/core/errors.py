"""
pocket-lm :: Errors

Failure taxonomy for the runtime.

  ModelNotFound          id has no registered descriptor
  AlreadyLoaded          benign, load_model treats it as success
  LoadFailure            artifact could not be turned into a session
  SessionUnavailable     session missing or already released
  InferenceOutputError   forward pass produced no usable logits
  DegenerateDistribution sampling mass collapsed (internal only)

INL - 2025
"""


class PocketLMError(Exception):
    """Base class for every runtime error."""


class ModelNotFound(PocketLMError):
    def __init__(self, model_id: str, available=None):
        self.model_id = model_id
        self.available = list(available or [])
        msg = f"Unknown model: {model_id}"
        if self.available:
            msg += f". Available: {', '.join(self.available)}"
        super().__init__(msg)


class AlreadyLoaded(PocketLMError):
    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Model {model_id} already loaded")


class LoadFailure(PocketLMError):
    pass


class SessionUnavailable(PocketLMError):
    def __init__(self, model_id: str, reason: str = "not loaded"):
        self.model_id = model_id
        super().__init__(f"Model {model_id} {reason}")


class InferenceOutputError(PocketLMError):
    pass


class DegenerateDistribution(PocketLMError):
    pass
