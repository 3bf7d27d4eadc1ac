"""
Error taxonomy for the copilot decision core.

- Initialization errors disable the embedding tier only.
- Inference errors are recovered by the router (Tier 1 answer wins).
- Sensor errors keep a single processor out of fusion.
"""


class CopilotError(Exception):
    """Base class for all copilot core errors."""


class EmbeddingUnavailableError(CopilotError):
    """Vocabulary, model or anchors could not be loaded."""


class VocabularyLoadError(EmbeddingUnavailableError):
    """Vocabulary file missing, unreadable or empty."""


class InferenceError(CopilotError):
    """Embedding model failed at runtime."""


class SensorUnavailableError(CopilotError):
    """Device resource behind a sensor processor could not be acquired."""
