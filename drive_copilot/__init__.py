"""
Decision Core for the In-Vehicle AI Copilot

Components:
- tokenizer.py: WordPiece tokenizer for the embedding model
- sensors.py: Motion / audio / vision processors
- fusion.py: Hazard fusion engine (single decaying HazardState)
- embedding.py: Embedding classifier (mean pooling + anchor similarity)
- router.py: Tiered router (reflex -> keywords -> semantic)
- pipeline.py: End-to-end orchestration
"""

from .config import CopilotConfig, configure_logging, get_config
from .embedding import EmbeddingClassifier, TransformerEmbeddingModel
from .errors import (
    CopilotError,
    EmbeddingUnavailableError,
    InferenceError,
    SensorUnavailableError,
    VocabularyLoadError,
)
from .fusion import HazardFusionEngine
from .pipeline import CopilotPipeline, PerceptionManager, QueryResult
from .router import RouteResult, TieredRouter
from .schema import AnchorVector, HazardObservation, HazardState, RouteDecision, VisionFeatures
from .sensors import AudioProcessor, MotionProcessor, SampleFeed, VisionProcessor
from .tokenizer import WordPieceTokenizer

__all__ = [
    # Main entry point
    "CopilotPipeline",
    "PerceptionManager",
    "QueryResult",
    "TieredRouter",
    "RouteResult",
    "RouteDecision",
    # Perception
    "HazardFusionEngine",
    "HazardObservation",
    "HazardState",
    "MotionProcessor",
    "AudioProcessor",
    "VisionProcessor",
    "VisionFeatures",
    "SampleFeed",
    # Semantic tier
    "WordPieceTokenizer",
    "EmbeddingClassifier",
    "TransformerEmbeddingModel",
    "AnchorVector",
    # Config and errors
    "CopilotConfig",
    "get_config",
    "configure_logging",
    "CopilotError",
    "EmbeddingUnavailableError",
    "VocabularyLoadError",
    "InferenceError",
    "SensorUnavailableError",
]
