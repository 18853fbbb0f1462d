"""
Shared types for Generation Service calls.
These are simple dataclasses with no heavy dependencies.
"""
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class Guide:
    """A ControlNet-preprocessed image steering a generation."""
    image: str
    weight: float = 1.0
    start_step: int = 1
    end_step: Optional[int] = None  # None means "steps - 1"
    control_mode: str = "balanced"


@dataclass
class Adapter:
    """A LoRA-style model adapter and its weight."""
    model_id: str
    weight: float = 1.0


@dataclass
class GenerationParams:
    """Engine node parameters for a generate call."""
    model: str
    width: int = 1024
    height: int = 1024
    steps: int = 28
    cfg_scale: float = 3.5
    seed_image: Optional[str] = None
    strength: Optional[float] = None
    reference_images: List[str] = field(default_factory=list)
