"""
Configuration for the copilot decision core.

All thresholds, windows and model locations are defined here. Defaults match
the values the perception and routing heuristics were tuned with; a few can be
overridden through COPILOT_* environment variables.
"""

import logging
import os
from typing import List, Optional

from pydantic import BaseModel, Field


class FusionConfig(BaseModel):
    """Hazard fusion state machine settings."""
    hazard_threshold: float = Field(default=0.4, ge=0, le=1)
    boost: float = Field(default=0.1, ge=0, le=1)
    decay_seconds: float = Field(default=3.0, gt=0)


class MotionConfig(BaseModel):
    """Accelerometer heuristics (m/s^2, 9.8 is 1G)."""
    gravity_alpha: float = Field(default=0.8, ge=0, lt=1)
    brake_threshold: float = 11.0    # hard stop (~1.1G)
    pothole_threshold: float = 14.0  # sharp jolt (~1.4G)
    impact_threshold: float = 25.0   # crash (~2.5G)
    vertical_ratio: float = Field(default=0.6, ge=0, le=1)
    debounce_seconds: float = Field(default=1.5, ge=0)
    poll_timeout: float = Field(default=0.1, gt=0)


class AudioConfig(BaseModel):
    """Microphone loudness trigger."""
    sample_rate: int = Field(default=44100, gt=0)
    buffer_size: int = Field(default=4096, gt=0)
    calibration_offset_db: float = 90.0
    noise_threshold_db: float = 75.0
    impact_threshold_db: float = 85.0
    confidence_span_db: float = Field(default=20.0, gt=0)
    debounce_seconds: float = Field(default=1.0, ge=0)
    poll_timeout: float = Field(default=0.1, gt=0)


class VisionConfig(BaseModel):
    """Camera feature rules."""
    cadence_seconds: float = Field(default=2.0, gt=0)
    pothole_min_speed_kmh: float = 30.0
    red_light_min_speed_kmh: float = 40.0


class RouterConfig(BaseModel):
    """Tiered router and embedding classifier settings."""
    # Tier 0
    safety_keywords: List[str] = Field(
        default_factory=lambda: ["brake", "stop", "hazard", "watch out", "danger", "look out"]
    )

    # Tier 1
    cloud_keywords: List[str] = Field(
        default_factory=lambda: ["summary", "history", "trend", "report", "stats", "analyze", "why"]
    )
    local_keywords: List[str] = Field(
        default_factory=lambda: ["speed", "distance", "turn", "pothole", "traffic", "nearest"]
    )
    caution_keywords: List[str] = Field(default_factory=lambda: ["slow", "careful"])
    caution_min_speed_kmh: float = 50.0
    tier1_threshold: float = Field(default=0.9, ge=0, le=1)

    # Tier 2
    semantic_tier: bool = True
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    vocab_path: Optional[str] = None
    anchors_path: Optional[str] = None
    device: str = "cpu"
    max_seq_len: int = Field(default=128, gt=2)
    embedding_dim: int = Field(default=384, gt=0)
    high_speed_kmh: float = 60.0
    safety_threshold: float = 0.55
    safety_threshold_high_speed: float = 0.35
    cloud_threshold: float = 0.4
    tier2_timeout_seconds: Optional[float] = Field(default=None, gt=0)


class CopilotConfig(BaseModel):
    fusion: FusionConfig = Field(default_factory=FusionConfig)
    motion: MotionConfig = Field(default_factory=MotionConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    vision: VisionConfig = Field(default_factory=VisionConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    log_level: str = "INFO"

    def summary(self) -> dict:
        """Returns a flat view of the most tuned values for debugging."""
        return {
            "hazard_threshold": self.fusion.hazard_threshold,
            "decay_seconds": self.fusion.decay_seconds,
            "tier1_threshold": self.router.tier1_threshold,
            "model_name": self.router.model_name,
            "vocab_path": self.router.vocab_path,
            "anchors_path": self.router.anchors_path,
            "tier2_timeout_seconds": self.router.tier2_timeout_seconds,
        }


def _apply_env_overrides(data: dict) -> None:
    """Apply environment variable overrides to data in place."""
    if v := os.environ.get("COPILOT_HAZARD_THRESHOLD"):
        data.setdefault("fusion", {})["hazard_threshold"] = float(v)

    if v := os.environ.get("COPILOT_DECAY_SECONDS"):
        data.setdefault("fusion", {})["decay_seconds"] = float(v)

    if v := os.environ.get("COPILOT_MODEL_NAME"):
        data.setdefault("router", {})["model_name"] = v

    if v := os.environ.get("COPILOT_VOCAB_PATH"):
        data.setdefault("router", {})["vocab_path"] = v

    if v := os.environ.get("COPILOT_ANCHORS_PATH"):
        data.setdefault("router", {})["anchors_path"] = v

    if v := os.environ.get("COPILOT_TIER2_TIMEOUT"):
        data.setdefault("router", {})["tier2_timeout_seconds"] = float(v)

    if v := os.environ.get("COPILOT_SEMANTIC_TIER"):
        data.setdefault("router", {})["semantic_tier"] = v.lower() not in ("0", "false", "no")

    if v := os.environ.get("COPILOT_DEVICE"):
        data.setdefault("router", {})["device"] = v

    if v := os.environ.get("COPILOT_LOG_LEVEL"):
        data["log_level"] = v.upper()


_cached_config: Optional[CopilotConfig] = None


def get_config() -> CopilotConfig:
    """Load and cache config. Defaults + env overrides."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    data: dict = {}
    _apply_env_overrides(data)
    _cached_config = CopilotConfig(**data)
    return _cached_config


def reset_config_cache() -> None:
    global _cached_config
    _cached_config = None


def configure_logging(level: Optional[str] = None) -> None:
    """Console logging for scripts and the API server."""
    logging.basicConfig(
        level=(level or get_config().log_level).upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
