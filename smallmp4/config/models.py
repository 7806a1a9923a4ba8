from enum import Enum
from pydantic import BaseModel, Field, field_validator, model_validator
from smallmp4.domain.models import EncoderPreset


class QuotaPolicy(str, Enum):
    """What a session does when every device for its hardware encoder is busy."""
    SOFTWARE = "software"
    QUEUE = "queue"


class GeneralConfig(BaseModel):
    target_size_mb: float = Field(default=10, gt=0)
    audio_bitrate_kbps: int = Field(default=128, ge=0)
    container_overhead: float = Field(default=0.02, ge=0.0, lt=0.5)
    safety_margin: float = Field(default=0.95, gt=0.0, le=1.0)
    min_video_bitrate_kbps: int = Field(default=50, gt=0)
    max_corrective_retries: int = Field(default=2, ge=0)
    corrective_step: float = Field(default=0.10, gt=0.0, lt=1.0)
    preset: EncoderPreset = EncoderPreset.MEDIUM
    two_pass_software: bool = True
    fallback_on_explicit: bool = False
    quota_policy: QuotaPolicy = QuotaPolicy.SOFTWARE
    threads: int = Field(default=1, gt=0)
    debug: bool = False


class EstimatorConfig(BaseModel):
    min_quality: int = Field(default=18, ge=0)
    max_quality: int = Field(default=51, le=63)
    clamp_min: int = 20
    clamp_max: int = 40
    tolerance_mb: float = Field(default=0.5, gt=0)
    max_iterations: int = Field(default=10, gt=0)
    reference_quality: int = 23
    reference_bpp: float = Field(default=0.07, gt=0)

    @field_validator('max_quality')
    @classmethod
    def validate_domain(cls, v: int, info) -> int:
        low = info.data.get('min_quality')
        if low is not None and v <= low:
            raise ValueError(f"max_quality {v} must be above min_quality {low}")
        return v

    @model_validator(mode='after')
    def validate_clamp(self) -> 'EstimatorConfig':
        if not (self.min_quality <= self.clamp_min <= self.clamp_max <= self.max_quality):
            raise ValueError(
                f"Clamp range {self.clamp_min}-{self.clamp_max} must lie inside "
                f"{self.min_quality}-{self.max_quality}"
            )
        return self


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    estimator: EstimatorConfig = Field(default_factory=EstimatorConfig)
