import logging
from typing import Dict, Optional
from smallmp4.config.models import EstimatorConfig
from smallmp4.domain.models import MB, EncoderChoice, EncoderPreset, TargetSize, VideoMetadata

# Seconds of wall clock per second of video for the software reference at 'medium'
BASE_SECONDS_PER_SECOND = 0.2
REFERENCE_PIXELS = 1920 * 1080


class SizeEstimator:
    """
    Predicts output size from metadata without encoding.

    The model assumes a bits-per-pixel figure at the reference quality that
    doubles for every 6 steps of quality parameter (the usual x264 CRF rule).
    Advisory only: the size ceiling comes from the bitrate budget.
    """

    def __init__(
        self,
        config: Optional[EstimatorConfig] = None,
        audio_bitrate_kbps: int = 128,
        container_overhead: float = 0.02,
    ):
        self.config = config or EstimatorConfig()
        self.audio_bitrate_kbps = audio_bitrate_kbps
        self.container_overhead = container_overhead
        self.logger = logging.getLogger(__name__)

    def video_bits_per_second(
        self,
        metadata: VideoMetadata,
        quality_param: int,
        encoder: EncoderChoice = EncoderChoice.SOFTWARE,
    ) -> float:
        scale = 2 ** ((self.config.reference_quality - quality_param) / 6)
        bps = metadata.pixels * metadata.fps * self.config.reference_bpp * scale / encoder.efficiency
        if metadata.source_bitrate_kbps > 0:
            # Re-encoding never needs more than the source
            bps = min(bps, metadata.source_bitrate_kbps * 1000)
        return bps

    def estimate(
        self,
        metadata: VideoMetadata,
        quality_param: int,
        encoder: EncoderChoice = EncoderChoice.SOFTWARE,
    ) -> int:
        """Predicted output size in bytes at the given quality parameter."""
        video_bps = self.video_bits_per_second(metadata, quality_param, encoder)
        audio_bps = self.audio_bitrate_kbps * 1000 if metadata.has_audio else 0
        size = (video_bps + audio_bps) * metadata.duration_seconds / 8 * (1 + self.container_overhead)
        return int(round(size))

    def clamp(self, quality_param: int) -> int:
        return max(self.config.clamp_min, min(self.config.clamp_max, quality_param))

    def recommend_quality_for_size(
        self,
        metadata: VideoMetadata,
        target_size: TargetSize,
        encoder: EncoderChoice = EncoderChoice.SOFTWARE,
    ) -> int:
        """Bounded binary search for the quality parameter whose estimate lands near the target."""
        target = target_size.size_bytes
        tolerance = self.config.tolerance_mb * MB
        lo, hi = self.config.min_quality, self.config.max_quality
        seen: Dict[int, int] = {}
        best_under: Optional[int] = None

        for iteration in range(1, self.config.max_iterations + 1):
            if lo > hi:
                break
            mid = (lo + hi) // 2
            size = seen[mid] = self.estimate(metadata, mid, encoder)
            self.logger.debug(f"Estimator iteration {iteration}: q={mid} estimate={size} target={target}")
            if abs(size - target) <= tolerance:
                return self.clamp(mid)
            if size > target:
                lo = mid + 1
            else:
                best_under = mid
                hi = mid - 1

        # Estimates fall as q rises, so the closest candidates straddle the boundary
        boundary = best_under if best_under is not None else self.config.max_quality
        for q in (boundary, boundary - 1):
            if q < self.config.min_quality:
                continue
            size = seen[q] if q in seen else self.estimate(metadata, q, encoder)
            if abs(size - target) <= tolerance:
                return self.clamp(q)

        self.logger.debug(f"No quality within tolerance of {target_size}, using q={boundary}")
        return self.clamp(boundary)

    def estimate_encoding_time(
        self,
        metadata: VideoMetadata,
        encoder: EncoderChoice = EncoderChoice.SOFTWARE,
        preset: EncoderPreset = EncoderPreset.MEDIUM,
    ) -> float:
        """Rough wall-clock seconds for the encode, for reporting only."""
        resolution_factor = max(metadata.pixels / REFERENCE_PIXELS, 0.1)
        seconds = metadata.duration_seconds * BASE_SECONDS_PER_SECOND * resolution_factor
        return seconds * preset.time_factor / encoder.speed_multiplier
