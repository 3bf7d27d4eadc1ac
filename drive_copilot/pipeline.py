"""
End-to-End Copilot Pipeline

Orchestrates: Sensor Processors -> Hazard Fusion -> Router

- PerceptionManager wires the processors into one fusion engine.
- CopilotPipeline answers driver queries using the latest hazard state.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .config import CopilotConfig, get_config
from .fusion import HazardFusionEngine
from .router import TieredRouter
from .schema import HazardState, RouteDecision
from .sensors import (
    AudioProcessor,
    MicrophoneSource,
    MotionProcessor,
    SampleFeed,
    SensorProcessor,
    SimulatedFeatureSource,
    VisionProcessor,
)

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """Result from routing one driver query."""
    decision: RouteDecision
    tier: int
    confidence: float
    hazard: HazardState
    route_time_ms: float
    total_time_ms: float

    def to_dict(self) -> dict:
        return {
            "decision": self.decision.value,
            "tier": self.tier,
            "confidence": round(self.confidence, 3),
            "hazard": self.hazard.to_dict(),
            "route_time_ms": self.route_time_ms,
            "total_time_ms": self.total_time_ms,
        }


class PerceptionManager:
    """
    Owns the sensor processors and the fusion engine.

    Flow:
    1. Motion (imu), audio and vision processors run on their own threads
    2. Each observation is reported to the engine tagged with its source
    3. Engine publishes HazardState changes to subscribers
    """

    def __init__(
        self,
        engine: Optional[HazardFusionEngine] = None,
        motion: Optional[MotionProcessor] = None,
        audio: Optional[AudioProcessor] = None,
        vision: Optional[VisionProcessor] = None,
    ):
        self.engine = engine or HazardFusionEngine()
        self.processors: Dict[str, SensorProcessor] = {
            p.name: p for p in (motion, audio, vision) if p is not None
        }
        self.running = False

    @classmethod
    def simulated(cls, config: Optional[CopilotConfig] = None) -> "PerceptionManager":
        """Push-fed motion and audio plus the camera simulator."""
        config = config or get_config()
        return cls(
            engine=HazardFusionEngine(config.fusion),
            motion=MotionProcessor(SampleFeed(), config.motion),
            audio=AudioProcessor(SampleFeed(), config.audio),
            vision=VisionProcessor(
                SimulatedFeatureSource(config.vision.cadence_seconds), config.vision
            ),
        )

    @classmethod
    def with_microphone(cls, config: Optional[CopilotConfig] = None) -> "PerceptionManager":
        """Live microphone; motion samples pushed by the host platform."""
        config = config or get_config()
        return cls(
            engine=HazardFusionEngine(config.fusion),
            motion=MotionProcessor(SampleFeed(), config.motion),
            audio=AudioProcessor(
                MicrophoneSource(config.audio.sample_rate, config.audio.buffer_size), config.audio
            ),
            vision=VisionProcessor(
                SimulatedFeatureSource(config.vision.cadence_seconds), config.vision
            ),
        )

    @property
    def hazard_state(self) -> HazardState:
        return self.engine.snapshot()

    def subscribe(self, callback: Callable[[HazardState], None]) -> Callable[[], None]:
        return self.engine.subscribe(callback)

    def feed(self, name: str) -> Optional[SampleFeed]:
        """Push feed behind a processor, if it has one."""
        processor = self.processors.get(name)
        if processor is not None and isinstance(processor.source, SampleFeed):
            return processor.source
        return None

    def start(self) -> Dict[str, bool]:
        """
        Start the engine, then every processor.

        Returns:
            {processor name: started}; a failed processor stays out of fusion
        """
        self.engine.start()
        started = {
            name: processor.start(self.engine.observer(name))
            for name, processor in self.processors.items()
        }
        self.running = True

        for name, ok in started.items():
            if not ok:
                logger.warning("Sensor %s unavailable; continuing without it", name)
        return started

    def stop(self) -> None:
        if not self.running:
            return
        self.running = False

        for processor in self.processors.values():
            processor.stop()
        self.engine.stop()

    def active_sensors(self) -> Dict[str, bool]:
        return {name: p.is_running for name, p in self.processors.items()}


class CopilotPipeline:
    """
    Driver query entry point: reads the latest hazard state and routes.
    """

    def __init__(self, perception: PerceptionManager, router: Optional[TieredRouter] = None):
        self.perception = perception
        self.router = router or TieredRouter()

    @classmethod
    def from_config(cls, config: Optional[CopilotConfig] = None, simulated: bool = True,
                    load_model: Optional[bool] = None) -> "CopilotPipeline":
        config = config or get_config()
        if simulated:
            perception = PerceptionManager.simulated(config)
        else:
            perception = PerceptionManager.with_microphone(config)
        if load_model is None:
            load_model = config.router.semantic_tier
        router = TieredRouter.from_config(config.router, load_model=load_model)
        return cls(perception, router)

    def start(self) -> Dict[str, bool]:
        return self.perception.start()

    def stop(self) -> None:
        self.perception.stop()
        self.router.close()

    def ask(self, text: str, speed: float, has_connectivity: bool = True) -> QueryResult:
        """
        Route a driver query.

        Args:
            text: Driver query
            speed: Current speed in km/h
            has_connectivity: Whether the cloud agent is reachable

        Returns:
            QueryResult
        """
        total_start = time.time()

        hazard = self.perception.hazard_state
        trace = self.router.route_with_trace(text, speed, hazard.has_hazard, has_connectivity)

        total_time = (time.time() - total_start) * 1000
        logger.info("Router decision: %s | input: %r | hazard: %s",
                    trace.decision.value, text, hazard.type if hazard.has_hazard else "none")

        return QueryResult(
            decision=trace.decision,
            tier=trace.tier,
            confidence=trace.confidence,
            hazard=hazard,
            route_time_ms=trace.elapsed_ms,
            total_time_ms=total_time,
        )
