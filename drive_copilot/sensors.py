"""
Sensor Processors

Three independent producers, each on its own worker thread:
- MotionProcessor: accelerometer -> impact / pothole / harsh_brake
- AudioProcessor: microphone loudness -> impact / horn
- VisionProcessor: camera scene features -> pedestrian / collision_warning / ...

Each processor owns one source (accelerometer feed, microphone stream,
feature source) and exposes start(callback) / stop(). Observations are handed
to the callback, normally HazardFusionEngine.observer(...).
"""

import logging
import math
import queue
import threading
import time
from typing import Any, Callable, List, Optional, Protocol, Sequence

import numpy as np

from .config import AudioConfig, MotionConfig, VisionConfig
from .errors import SensorUnavailableError
from .schema import HazardObservation, VisionFeatures

logger = logging.getLogger(__name__)

ObservationCallback = Callable[[HazardObservation], None]


class SampleSource(Protocol):
    """Device stream a processor reads from."""

    @property
    def closed(self) -> bool: ...

    def open(self) -> None: ...

    def read(self, timeout: float) -> Optional[Any]: ...

    def close(self) -> None: ...


# ---------- Sources ----------


class SampleFeed:
    """
    Thread-safe feed the host platform pushes samples into.

    Works for any processor: (x, y, z) tuples for motion, int16 PCM arrays
    for audio, VisionFeatures for vision.
    """

    def __init__(self):
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._closed = threading.Event()
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def open(self) -> None:
        self._closed.clear()

    def push(self, sample: Any) -> None:
        self._queue.put(sample)

    def read(self, timeout: float) -> Optional[Any]:
        if self.closed:
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._closed.set()


class MicrophoneSource:
    """Mono 16-bit microphone capture through sounddevice."""

    def __init__(self, sample_rate: int = 44100, buffer_size: int = 4096):
        self.sample_rate = sample_rate
        self.buffer_size = buffer_size
        self._stream = None

    @property
    def closed(self) -> bool:
        return self._stream is None

    def open(self) -> None:
        try:
            import sounddevice as sd
        except (ImportError, OSError) as e:
            raise SensorUnavailableError(f"Audio backend not available: {e}") from e

        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self.buffer_size,
            )
            stream.start()
        except sd.PortAudioError as e:
            raise SensorUnavailableError(f"Microphone init failed: {e}") from e

        self._stream = stream

    def read(self, timeout: float) -> Optional[np.ndarray]:
        # Blocking read, paced by the sample rate
        stream = self._stream
        if stream is None:
            return None
        data, overflowed = stream.read(self.buffer_size)
        if overflowed:
            logger.debug("Microphone buffer overflow")
        return np.asarray(data[:, 0], dtype=np.int16)

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


class SimulatedFeatureSource:
    """
    Camera simulator (demo edition).

    Cycles through scripted scenarios, one every `cadence_seconds`.
    A real implementation replaces this with a detector-backed source.
    """

    SCENARIOS = [
        "safe", "safe", "safe",  # mostly safe driving
        "pothole",               # sudden pothole
        "safe", "safe",
        "pedestrian",            # pedestrian crossing
        "safe",
        "red_light",             # running a light
    ]

    def __init__(self, cadence_seconds: float = 2.0, scenarios: Optional[Sequence[str]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.cadence_seconds = cadence_seconds
        self.scenarios: List[str] = list(scenarios or self.SCENARIOS)
        self.clock = clock
        self.index = 0
        self._next_at = 0.0
        self._closed = threading.Event()
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def open(self) -> None:
        self._closed.clear()
        self._next_at = self.clock() + self.cadence_seconds

    @staticmethod
    def features_for(scenario: str) -> VisionFeatures:
        if scenario == "pothole":
            return VisionFeatures(pothole_ahead=True, speed_kmh=60.0)
        if scenario == "pedestrian":
            return VisionFeatures(pedestrian_in_path=True, speed_kmh=30.0)
        if scenario == "red_light":
            return VisionFeatures(red_light_ahead=True, speed_kmh=50.0)
        return VisionFeatures(speed_kmh=60.0)

    def read(self, timeout: float) -> Optional[VisionFeatures]:
        remaining = self._next_at - self.clock()
        if remaining > timeout:
            self._closed.wait(timeout)
            return None
        if remaining > 0 and self._closed.wait(remaining):
            return None
        if self.closed:
            return None

        self._next_at += self.cadence_seconds
        scenario = self.scenarios[self.index % len(self.scenarios)]
        self.index += 1
        if scenario != "safe":
            logger.info("Simulated detection: %s", scenario)
        return self.features_for(scenario)

    def close(self) -> None:
        self._closed.set()


# ---------- Processors ----------


class SensorProcessor:
    """
    Base worker: reads samples from its source on a daemon thread and emits
    observations. Subclasses implement handle().
    """

    name = "sensor"

    def __init__(self, source: SampleSource, poll_timeout: float = 0.1):
        self.source = source
        self.poll_timeout = poll_timeout
        self._callback: Optional[ObservationCallback] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, callback: ObservationCallback) -> bool:
        """
        Acquire the source and start the worker.

        Returns:
            False if the device could not be acquired, or a previous worker
            is still shutting down; the processor then stays out of fusion.
        """
        with self._lock:
            if self.is_running:
                if self._stop_event.is_set():
                    # Old worker still owns the source until it exits
                    logger.warning("%s processor is still stopping, not restarting", self.name)
                    return False
                return True

            try:
                self.source.open()
            except SensorUnavailableError as e:
                logger.error("%s processor failed to start: %s", self.name, e)
                return False

            self._callback = callback
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, name=f"{self.name}-processor", daemon=True
            )
            self._thread.start()
            logger.info("%s processor listening...", self.name)
            return True

    def stop(self, timeout: float = 2.0) -> None:
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            # The worker releases the source on its way out
            self._stop_event.set()
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("%s processor did not stop within %.1fs", self.name, timeout)
                return
            self._thread = None
            self._callback = None
            logger.info("%s processor stopped", self.name)

    def handle(self, sample: Any) -> Optional[HazardObservation]:
        raise NotImplementedError

    def after_emit(self) -> None:
        """Hook run after each emitted observation."""

    def _emit(self, observation: HazardObservation) -> None:
        callback = self._callback
        if callback is None:
            return
        try:
            callback(observation)
        except Exception:
            logger.exception("%s processor callback failed", self.name)

    def _run(self) -> None:
        try:
            while not self._stop_event.is_set() and not self.source.closed:
                sample = self.source.read(self.poll_timeout)
                if sample is None:
                    continue
                observation = self.handle(sample)
                if observation is not None:
                    self._emit(observation)
                    self.after_emit()
        except Exception:
            logger.exception("Error in %s loop", self.name)
        finally:
            self.source.close()


class MotionProcessor(SensorProcessor):
    """
    The "inner ear": accelerometer forces.

    Gravity is isolated with a low-pass filter; the remaining linear
    acceleration is classified by magnitude.
    """

    name = "imu"

    def __init__(self, source: SampleSource, config: Optional[MotionConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or MotionConfig()
        super().__init__(source, poll_timeout=self.config.poll_timeout)
        self.clock = clock
        self.gravity = np.zeros(3)
        self.last_event_time: Optional[float] = None

    def handle(self, sample: Any) -> Optional[HazardObservation]:
        x, y, z = sample
        return self.process_sample(x, y, z)

    def process_sample(self, x: float, y: float, z: float,
                       now: Optional[float] = None) -> Optional[HazardObservation]:
        """Filter one accelerometer sample and classify it."""
        values = np.array([x, y, z], dtype=np.float64)
        alpha = self.config.gravity_alpha

        # 1. Isolate gravity (low-pass)
        self.gravity = alpha * self.gravity + (1 - alpha) * values

        # 2. Remove gravity (high-pass)
        linear = values - self.gravity

        # 3. Total force, ignoring direction
        magnitude = float(np.linalg.norm(linear))

        return self.detect(magnitude, float(linear[2]), now)

    def detect(self, magnitude: float, z_axis: float,
               now: Optional[float] = None) -> Optional[HazardObservation]:
        cfg = self.config
        now = self.clock() if now is None else now
        if self.last_event_time is not None and now - self.last_event_time < cfg.debounce_seconds:
            return None

        if magnitude > cfg.impact_threshold:
            hazard_type, severity = "impact", 1.0
        elif magnitude > cfg.pothole_threshold and abs(z_axis) > magnitude * cfg.vertical_ratio:
            # Vertical jolt; assumes the phone sits roughly flat in a holder
            hazard_type, severity = "pothole", 0.6
        elif magnitude > cfg.brake_threshold:
            hazard_type, severity = "harsh_brake", 0.8
        else:
            return None

        logger.warning("IMU detected: %s (mag=%.1f)", hazard_type, magnitude)
        self.last_event_time = now
        return HazardObservation(type=hazard_type, confidence=severity)


def compute_decibels(samples: Any, calibration_offset_db: float = 90.0) -> float:
    """
    Loudness estimate of a 16-bit PCM buffer from its RMS amplitude.

    Returns 0.0 for silence (no log(0)).
    """
    data = np.asarray(samples, dtype=np.float64)
    if data.size == 0:
        return 0.0

    normalized = data / 32768.0
    rms = float(np.sqrt(np.mean(normalized * normalized)))
    if rms > 0:
        # The offset is a rough calibration for phone microphones
        return 20 * math.log10(rms) + calibration_offset_db
    return 0.0


class AudioProcessor(SensorProcessor):
    """
    Loudness trigger: sudden decibel spikes (crashes, honks).
    """

    name = "audio"

    def __init__(self, source: SampleSource, config: Optional[AudioConfig] = None):
        self.config = config or AudioConfig()
        super().__init__(source, poll_timeout=self.config.poll_timeout)

    def handle(self, sample: Any) -> Optional[HazardObservation]:
        return self.process_buffer(sample)

    def process_buffer(self, samples: Any) -> Optional[HazardObservation]:
        cfg = self.config
        db = compute_decibels(samples, cfg.calibration_offset_db)
        if db <= cfg.noise_threshold_db:
            return None

        logger.warning("Loud noise detected: %d dB", int(db))
        hazard_type = "impact" if db > cfg.impact_threshold_db else "horn"
        confidence = (db - cfg.noise_threshold_db) / cfg.confidence_span_db
        confidence = min(max(confidence, 0.5), 1.0)
        return HazardObservation(type=hazard_type, confidence=confidence)

    def after_emit(self) -> None:
        # Debounce repeated triggers from the same sound
        self._stop_event.wait(self.config.debounce_seconds)


def analyze_features(features: VisionFeatures,
                     config: Optional[VisionConfig] = None) -> Optional[HazardObservation]:
    """Map scene features to a hazard; first matching rule wins."""
    cfg = config or VisionConfig()
    if features.pedestrian_in_path:
        return HazardObservation(type="pedestrian", confidence=0.95)
    if features.vehicle_ahead_close:
        return HazardObservation(type="collision_warning", confidence=0.9)
    if features.pothole_ahead and features.speed_kmh > cfg.pothole_min_speed_kmh:
        return HazardObservation(type="pothole", confidence=0.7)
    if features.red_light_ahead and features.speed_kmh > cfg.red_light_min_speed_kmh:
        return HazardObservation(type="red_light_violation", confidence=0.8)
    return None


class VisionProcessor(SensorProcessor):
    """Scene features from the camera pipeline."""

    name = "vision"

    def __init__(self, source: SampleSource, config: Optional[VisionConfig] = None,
                 poll_timeout: float = 0.1):
        self.config = config or VisionConfig()
        super().__init__(source, poll_timeout=poll_timeout)

    def handle(self, sample: Any) -> Optional[HazardObservation]:
        return analyze_features(sample, self.config)
