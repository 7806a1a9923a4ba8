from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel
from .models import CompressionResult, EncodePlan, EncoderChoice, HardwareCapabilities, SessionPhase


class Event(BaseModel):
    """Base class for all domain events."""
    pass


class SessionEvent(Event):
    session_id: str
    input_path: Path


class PhaseChanged(SessionEvent):
    previous: SessionPhase
    phase: SessionPhase


class PlanCreated(SessionEvent):
    plan: EncodePlan


class ProgressUpdated(SessionEvent):
    fraction: float


class EncoderFallback(SessionEvent):
    failed_encoder: EncoderChoice
    next_encoder: Optional[EncoderChoice] = None
    reason: str


class QuotaFallback(SessionEvent):
    requested_encoder: EncoderChoice
    device_ids: List[int]


class CorrectiveRetry(SessionEvent):
    retry: int
    actual_bytes: int
    target_bytes: int


class CompressionCompleted(SessionEvent):
    result: CompressionResult


class CompressionFailed(SessionEvent):
    error_kind: str
    error_message: str
    could_not_start: bool


class CompressionCancelledEvent(SessionEvent):
    pass


class HardwareDetected(Event):
    capabilities: HardwareCapabilities
