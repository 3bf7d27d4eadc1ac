#!/usr/bin/env python3
"""
In-Vehicle Copilot Decision API Server

Simple JSON API:
- POST /route: Route a driver query to the safety / local / cloud agent
- GET /hazard: Current fused hazard state
- POST /hazard/observations: Inject an observation from an external sensor

Usage:
    uvicorn api.copilot_server:app --host 0.0.0.0 --port 8000

Example request:
    curl -X POST http://localhost:8000/route \
        -H "Content-Type: application/json" \
        -d '{"text": "Is there traffic ahead?", "speed": 40}'
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import torch
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from drive_copilot import CopilotPipeline, configure_logging

logger = logging.getLogger(__name__)


# Pydantic models
class RouteInput(BaseModel):
    """Driver query."""
    text: str
    speed: float = Field(default=0.0, ge=0)  # km/h
    has_connectivity: bool = True


class HazardOutput(BaseModel):
    """Fused hazard state."""
    has_hazard: bool
    type: str
    confidence: float
    sources: List[str]
    last_updated: float


class RouteResponse(BaseModel):
    """Routing decision."""
    decision: str
    tier: int
    confidence: float
    hazard: HazardOutput
    route_time_ms: float
    total_time_ms: float


class ObservationInput(BaseModel):
    """Observation from a sensor outside this process."""
    type: str = Field(min_length=1)
    confidence: float = Field(ge=0, le=1)
    source: str = "external"


# Global copilot instance (lazy loaded)
copilot: Optional[CopilotPipeline] = None


def get_copilot() -> CopilotPipeline:
    """Get or create copilot instance."""
    global copilot
    if copilot is None:
        logger.info("Initializing copilot...")
        copilot = CopilotPipeline.from_config()
    return copilot


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start perception on startup, stop it on shutdown."""
    configure_logging()
    cop = get_copilot()
    started = cop.start()
    logger.info("Sensors started: %s", started)
    yield
    cop.stop()


# Initialize app
app = FastAPI(
    title="In-Vehicle Copilot Decision Core",
    description="Hazard fusion and tiered query routing",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "service": "In-Vehicle Copilot Decision Core",
        "version": "1.0.0",
        "endpoints": {
            "/route": "POST - Route a driver query",
            "/hazard": "GET - Current hazard state",
            "/hazard/observations": "POST - Report an external observation",
            "/health": "GET - Health check",
        },
    }


@app.get("/health")
def health():
    """Health check."""
    cop = get_copilot()
    sensors: Dict[str, bool] = cop.perception.active_sensors()
    return {
        "status": "healthy",
        "fusion_running": cop.perception.engine.is_running,
        "semantic_tier": cop.router.semantic_tier_available,
        "sensors": sensors,
        "gpu_available": torch.cuda.is_available(),
    }


@app.get("/hazard", response_model=HazardOutput)
def hazard():
    """Latest fused hazard state."""
    return HazardOutput(**get_copilot().perception.hazard_state.to_dict())


@app.post("/hazard/observations", status_code=202)
def report_observation(observation: ObservationInput):
    """Feed an observation into fusion."""
    engine = get_copilot().perception.engine
    if not engine.report(observation.type, observation.confidence, observation.source):
        raise HTTPException(status_code=409, detail="Hazard fusion engine is not running")
    return {"accepted": True}


@app.post("/route", response_model=RouteResponse)
def route(query: RouteInput):
    """
    Route a driver query using the current hazard state.
    """
    try:
        result = get_copilot().ask(query.text, query.speed, query.has_connectivity)
    except Exception as e:
        logger.exception("Routing failed")
        raise HTTPException(status_code=500, detail=str(e))

    data = result.to_dict()
    return RouteResponse(
        decision=data["decision"],
        tier=data["tier"],
        confidence=data["confidence"],
        hazard=HazardOutput(**data["hazard"]),
        route_time_ms=data["route_time_ms"],
        total_time_ms=data["total_time_ms"],
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
