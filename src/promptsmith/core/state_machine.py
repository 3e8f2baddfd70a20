from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Tuple


class PipelineStage(str, Enum):
    NONE = "none"
    REPORT = "report"
    THINKING = "thinking"
    INITIAL = "initial"
    ADVICE = "advice"
    FINAL = "final"


# Generative stages in execution order.
STAGE_ORDER: Tuple[PipelineStage, ...] = (
    PipelineStage.REPORT,
    PipelineStage.THINKING,
    PipelineStage.INITIAL,
    PipelineStage.ADVICE,
    PipelineStage.FINAL,
)

# Linear: none -> report -> thinking -> initial -> advice -> final -> none
STAGE_TRANSITIONS: Dict[PipelineStage, List[PipelineStage]] = {
    PipelineStage.NONE: [PipelineStage.REPORT],
    PipelineStage.REPORT: [PipelineStage.THINKING],
    PipelineStage.THINKING: [PipelineStage.INITIAL],
    PipelineStage.INITIAL: [PipelineStage.ADVICE],
    PipelineStage.ADVICE: [PipelineStage.FINAL],
    PipelineStage.FINAL: [PipelineStage.NONE],
}


def next_stage(current: PipelineStage) -> Optional[PipelineStage]:
    """Stage a sequential run moves to after ``current``; ``NONE`` ends the run."""
    options = STAGE_TRANSITIONS.get(current, [])
    return options[0] if options else None


def step_number(stage: PipelineStage) -> int:
    """1-based position among the four post-report steps (report itself is 0)."""
    return STAGE_ORDER.index(stage)
