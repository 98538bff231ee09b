from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class FrameBounds(BaseModel):
    """Horizontal extent of a rendered system, in performance seconds."""
    model_config = ConfigDict(frozen=True)

    left: float
    right: float


class PositionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    note_index: int = 0
    system_index: int = 0
    measure_number: Optional[int] = None
    position: float = Field(0.0, ge=0.0, le=100.0)  # percent across the frame
    system_completed: bool = False
    beat: int = 0
