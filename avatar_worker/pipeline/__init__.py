"""
Avatar Video Generation Saga

Multi-scene generation coordinated through the generation row and provider webhooks:
  Router: model selection, fallback, credit gate
  Callbacks: reconcile provider results, append segments, pick the next step
  Advancer: submit scene N+1 as an extension
  Stitcher: concatenate all segments once the last scene lands
  Poller: same reconciliation, pulled instead of pushed
"""

from .models import GenerationRecord, Phase, PhaseStatus, VideoSegment
from .orchestrator import SagaOrchestrator
from .routes import billing_router, callback_router, generation_router
from .services import Services

__all__ = [
    "GenerationRecord",
    "Phase",
    "PhaseStatus",
    "VideoSegment",
    "SagaOrchestrator",
    "Services",
    "generation_router",
    "callback_router",
    "billing_router",
]
