#!/usr/bin/env python3
"""
Tiered Decision Router for the In-Vehicle Copilot

Input: driver query + speed + hazard flag + connectivity flag
Output: which agent handles it (safety / local / cloud)

Tiers (first decisive tier wins):
    0. Reflex: active hazard or safety keyword -> AGENT_SAFETY
    1. Tiny classifier: keyword scoring, accepted at confidence >= 0.9
    2. Semantic routing: embedding similarity against anchor vectors

Tier 2 is optional. If it is unavailable, fails or times out the Tier 1
answer is returned; route() never raises.
"""

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass
from typing import List, Optional, Tuple

from .config import RouterConfig, configure_logging
from .embedding import EmbeddingClassifier
from .errors import EmbeddingUnavailableError, InferenceError
from .schema import RouteDecision

logger = logging.getLogger(__name__)


@dataclass
class RouteResult:
    """Routing decision with the tier that produced it."""
    decision: RouteDecision
    tier: int  # 0, 1 or 2
    confidence: float
    elapsed_ms: float = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["decision"] = self.decision.value
        return data


class TieredRouter:
    """
    Routes driver queries through the reflex / classifier / semantic cascade.

    Holds no per-call state, so concurrent route() calls are independent.
    """

    def __init__(self, classifier: Optional[EmbeddingClassifier] = None,
                 config: Optional[RouterConfig] = None):
        self.config = config or RouterConfig()
        self.classifier = classifier
        self._safety_patterns = [
            re.compile(r"\b" + re.escape(kw.lower()) + r"\b") for kw in self.config.safety_keywords
        ]
        # Shared by concurrent routes; route() only reads it
        self._executor: Optional[ThreadPoolExecutor] = None
        if classifier is not None and self.config.tier2_timeout_seconds is not None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="tier2")

    @classmethod
    def from_config(cls, config: Optional[RouterConfig] = None, load_model: bool = True) -> "TieredRouter":
        """
        Build a router, enabling Tier 2 when the embedding stack loads.

        An initialization failure disables Tier 2 for the lifetime of the router.
        """
        config = config or RouterConfig()
        classifier = None
        if load_model:
            try:
                classifier = EmbeddingClassifier.from_config(config)
                logger.info("Router ready with semantic tier")
            except EmbeddingUnavailableError as e:
                logger.error("Semantic tier unavailable, routing with tiers 0-1 only: %s", e)
        return cls(classifier=classifier, config=config)

    @property
    def semantic_tier_available(self) -> bool:
        return self.classifier is not None

    # ---------- Tier 0 ----------

    def has_safety_keyword(self, text: str) -> bool:
        clean = text.lower()
        return any(pattern.search(clean) for pattern in self._safety_patterns)

    # ---------- Tier 1 ----------

    def tier1_predict(self, text: str, speed: float) -> Tuple[RouteDecision, float]:
        """Keyword scoring; returns (route, confidence)."""
        cfg = self.config
        lower = text.lower()
        best_route = RouteDecision.AGENT_LOCAL
        confidence = 0.5

        if any(word in lower for word in cfg.cloud_keywords):
            best_route = RouteDecision.AGENT_CLOUD
            confidence = 0.95

        if any(word in lower for word in cfg.local_keywords):
            if confidence < cfg.tier1_threshold:
                best_route = RouteDecision.AGENT_LOCAL
                confidence = 0.9

        if speed > cfg.caution_min_speed_kmh and any(word in lower for word in cfg.caution_keywords):
            best_route = RouteDecision.AGENT_SAFETY
            confidence = 0.95

        return best_route, confidence

    # ---------- Tier 2 ----------

    def _classify(self, text: str, speed: float, has_connectivity: bool) -> Tuple[RouteDecision, float]:
        vector = self.classifier.embed(text)
        return self.classifier.classify_with_score(vector, has_connectivity, speed)

    def _semantic_route(self, text: str, speed: float, has_connectivity: bool) -> Tuple[RouteDecision, float]:
        timeout = self.config.tier2_timeout_seconds
        executor = self._executor
        if timeout is None or executor is None:
            return self._classify(text, speed, has_connectivity)

        future = executor.submit(self._classify, text, speed, has_connectivity)
        return future.result(timeout=timeout)

    # ---------- Cascade ----------

    def route_with_trace(self, text: str, speed: float, has_hazard: bool,
                         has_connectivity: bool = True) -> RouteResult:
        start = time.time()

        def _result(decision: RouteDecision, tier: int, confidence: float) -> RouteResult:
            elapsed = (time.time() - start) * 1000
            logger.debug("Route %s via tier %d (%.2f) for %r", decision.value, tier, confidence, text)
            return RouteResult(decision, tier, confidence, elapsed)

        # TIER 0: reflex rules
        if has_hazard:
            return _result(RouteDecision.AGENT_SAFETY, 0, 1.0)
        if self.has_safety_keyword(text):
            return _result(RouteDecision.AGENT_SAFETY, 0, 1.0)

        # TIER 1: tiny classifier
        tier1_route, tier1_confidence = self.tier1_predict(text, speed)
        if tier1_confidence >= self.config.tier1_threshold:
            if tier1_route == RouteDecision.AGENT_CLOUD and not has_connectivity:
                tier1_route = RouteDecision.AGENT_LOCAL
            return _result(tier1_route, 1, tier1_confidence)

        # TIER 2: semantic routing
        if self.classifier is None:
            return _result(tier1_route, 1, tier1_confidence)

        try:
            decision, similarity = self._semantic_route(text, speed, has_connectivity)
        except FutureTimeout:
            logger.warning("Semantic tier timed out after %ss, using tier 1", self.config.tier2_timeout_seconds)
            return _result(tier1_route, 1, tier1_confidence)
        except InferenceError as e:
            logger.warning("Semantic tier failed, using tier 1: %s", e)
            return _result(tier1_route, 1, tier1_confidence)
        except Exception:
            logger.exception("Unexpected semantic tier error, using tier 1")
            return _result(tier1_route, 1, tier1_confidence)

        return _result(decision, 2, similarity)

    def route(self, text: str, speed: float, has_hazard: bool,
              has_connectivity: bool = True) -> RouteDecision:
        """
        Decide which agent handles a driver query.

        Args:
            text: Driver query
            speed: Current speed in km/h
            has_hazard: Fused hazard flag
            has_connectivity: Whether the cloud agent is reachable

        Returns:
            RouteDecision (never raises)
        """
        return self.route_with_trace(text, speed, has_hazard, has_connectivity).decision

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


if __name__ == "__main__":
    import sys

    configure_logging()
    router = TieredRouter.from_config(load_model="--with-model" in sys.argv)
    args: List[str] = [a for a in sys.argv[1:] if a != "--with-model"]

    if not args:
        print("Usage: python -m drive_copilot.router \"<query>\" [speed_kmh] [--with-model]")
        print("\nExample:")
        print("  python -m drive_copilot.router \"Is there traffic ahead?\" 40")
        sys.exit(1)

    query = args[0]
    speed_kmh = float(args[1]) if len(args) > 1 else 0.0
    result = router.route_with_trace(query, speed_kmh, has_hazard=False)
    print(f"Query:    {query}")
    print(f"Decision: {result.decision.value} (tier {result.tier}, {result.elapsed_ms:.1f}ms)")
