#!/usr/bin/env python3
"""
Demo Script for the In-Vehicle Copilot Decision Core

Simulated drive:
1. Camera simulator cycles road scenarios (pothole, pedestrian, red light)
2. Accelerometer and microphone samples are pushed into the processors
3. Hazard fusion publishes state changes
4. Driver queries are routed with the live hazard state

Usage:
    # Tiers 0-1 only (no model download)
    python demo.py

    # Enable the semantic tier from configured model / vocab / anchors
    python demo.py --with-model

    # Route a single query and exit
    python demo.py --query "Give me a trend report" --speed 20 --offline
"""

import argparse
import time

import numpy as np

from drive_copilot import CopilotPipeline, HazardState, configure_logging, get_config

SAMPLE_QUERIES = [
    ("What's the traffic like nearby?", 30.0),
    ("Give me a historical trend report", 10.0),
    ("Brake now!", 20.0),
    ("Please be careful here", 70.0),
    ("Tell me something interesting", 40.0),
]


def print_hazard(state: HazardState):
    if state.has_hazard:
        print(f"  [HAZARD] {state.type} ({state.confidence:.2f}) from {', '.join(sorted(state.sources))}")
    elif state.is_idle:
        print("  [CLEAR] No active hazard")


def push_jolt(pipeline: CopilotPipeline):
    """Settle gravity, then a sharp vertical jolt (pothole)."""
    feed = pipeline.perception.feed("imu")
    if feed is None:
        return
    for _ in range(30):
        feed.push((0.0, 0.0, 9.8))
    feed.push((0.0, 0.0, 30.0))


def push_honk(pipeline: CopilotPipeline, sample_rate: int = 44100):
    """One buffer of a loud 440 Hz tone."""
    feed = pipeline.perception.feed("audio")
    if feed is None:
        return
    t = np.arange(4096) / sample_rate
    tone = (np.sin(2 * np.pi * 440 * t) * 20000).astype(np.int16)
    feed.push(tone)


def route_queries(pipeline: CopilotPipeline, has_connectivity: bool):
    for text, speed in SAMPLE_QUERIES:
        result = pipeline.ask(text, speed, has_connectivity)
        print(f"\n  Query: \"{text}\" @ {speed:.0f} km/h")
        print(f"  Decision: {result.decision.value} (tier {result.tier})")
        print(f"  Hazard: {result.hazard.type if result.hazard.has_hazard else 'none'}")
        print(f"  Time: {result.total_time_ms:.1f}ms")


def demo_drive(with_model: bool, has_connectivity: bool, duration: float):
    """Full simulated drive."""
    print("\n" + "=" * 60)
    print("  IN-VEHICLE COPILOT - SIMULATED DRIVE")
    print("=" * 60)

    pipeline = CopilotPipeline.from_config(load_model=with_model)
    pipeline.perception.subscribe(print_hazard)

    started = pipeline.start()
    print(f"\nSensors: {started}")
    print(f"Semantic tier: {'on' if pipeline.router.semantic_tier_available else 'off'}")

    try:
        print("\n[1/3] Cruising, routing queries with a clear road...")
        route_queries(pipeline, has_connectivity)

        print("\n[2/3] Pothole jolt and a horn...")
        push_jolt(pipeline)
        push_honk(pipeline)
        time.sleep(0.5)
        route_queries(pipeline, has_connectivity)

        print(f"\n[3/3] Driving on for {duration:.0f}s (camera simulator running)...")
        time.sleep(duration)
    finally:
        pipeline.stop()

    print("\n" + "=" * 60)
    print("  DEMO COMPLETE")
    print("=" * 60 + "\n")


def demo_query(text: str, speed: float, has_connectivity: bool, with_model: bool):
    pipeline = CopilotPipeline.from_config(load_model=with_model)
    result = pipeline.ask(text, speed, has_connectivity)
    print(f"Query:    {text}")
    print(f"Decision: {result.decision.value} (tier {result.tier}, {result.route_time_ms:.1f}ms)")
    pipeline.stop()


def main():
    parser = argparse.ArgumentParser(description="In-Vehicle Copilot Decision Core Demo")
    parser.add_argument("--with-model", action="store_true",
                        help="Load the embedding model for the semantic tier")
    parser.add_argument("--offline", action="store_true",
                        help="Simulate no connectivity (cloud agent unreachable)")
    parser.add_argument("--duration", type=float, default=20.0,
                        help="Seconds to keep the camera simulator running")
    parser.add_argument("--query", type=str,
                        help="Route a single query and exit")
    parser.add_argument("--speed", type=float, default=0.0,
                        help="Speed in km/h for --query")
    args = parser.parse_args()

    configure_logging(get_config().log_level)

    if args.query:
        demo_query(args.query, args.speed, not args.offline, args.with_model)
    else:
        demo_drive(args.with_model, not args.offline, args.duration)


if __name__ == "__main__":
    main()
