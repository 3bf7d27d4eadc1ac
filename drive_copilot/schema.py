"""
Data model shared by perception, fusion and routing.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Tuple


class RouteDecision(str, Enum):
    """Closed set of agents a driver query can be routed to."""
    AGENT_SAFETY = "AGENT_SAFETY"
    AGENT_LOCAL = "AGENT_LOCAL"
    AGENT_CLOUD = "AGENT_CLOUD"


@dataclass(frozen=True)
class HazardObservation:
    """Single detection emitted by a sensor processor."""
    type: str
    confidence: float  # 0 to 1


@dataclass(frozen=True)
class HazardState:
    """Immutable snapshot of the fused hazard state."""
    has_hazard: bool
    type: str  # e.g. "pothole", "harsh_brake", "none"
    confidence: float
    sources: FrozenSet[str] = frozenset()  # e.g. {"vision", "imu"}
    last_updated: float = field(default_factory=time.time)

    @classmethod
    def idle(cls) -> "HazardState":
        return cls(
            has_hazard=False,
            type="none",
            confidence=0.0,
            sources=frozenset(),
            last_updated=0.0,
        )

    @property
    def is_idle(self) -> bool:
        return not self.has_hazard and self.type == "none" and not self.sources

    def to_dict(self) -> dict:
        return {
            "has_hazard": self.has_hazard,
            "type": self.type,
            "confidence": round(self.confidence, 3),
            "sources": sorted(self.sources),
            "last_updated": self.last_updated,
        }


@dataclass(frozen=True)
class AnchorVector:
    """Reference embedding for one route category."""
    label: RouteDecision
    vector: Tuple[float, ...]

    @property
    def dim(self) -> int:
        return len(self.vector)


@dataclass(frozen=True)
class VisionFeatures:
    """Discrete scene features produced by the camera pipeline."""
    vehicle_ahead_close: bool = False
    pedestrian_in_path: bool = False
    red_light_ahead: bool = False
    pothole_ahead: bool = False
    speed_kmh: float = 0.0
    timestamp: float = field(default_factory=time.time)
