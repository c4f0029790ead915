"""Build pipeline module.

This module handles:
- Stage definitions and the fixed FFU stage order
- Per-run state
- Sequencing, failure unwind and cancellation through the orchestrator
"""

from ffu_builder.pipeline.collaborators import Collaborators
from ffu_builder.pipeline.orchestrator import Orchestrator
from ffu_builder.pipeline.stages import PipelineStage, StageContext, default_stages
from ffu_builder.pipeline.state import RunState

__all__ = [
    "Collaborators",
    "Orchestrator",
    "PipelineStage",
    "RunState",
    "StageContext",
    "default_stages",
]
