import logging
import math
from typing import Optional
from smallmp4.config.models import GeneralConfig
from smallmp4.domain.errors import InfeasibleTargetError
from smallmp4.domain.models import TargetSize, VideoMetadata


class BitrateBudgeter:
    """
    Turns a hard target size into a video bitrate ceiling.

    total bits, minus the audio allocation, minus container overhead, spread
    over the duration and scaled by the safety margin. Every returned bitrate
    satisfies (video + audio) * 1000 * duration / 8 * (1 + overhead) <= target.
    """

    def __init__(self, config: Optional[GeneralConfig] = None):
        self.config = config or GeneralConfig()
        self.logger = logging.getLogger(__name__)

    def audio_bitrate_for(self, metadata: VideoMetadata) -> int:
        return self.config.audio_bitrate_kbps if metadata.has_audio else 0

    def tightening_for(self, retry: int) -> float:
        """Extra multiplier for corrective pass number `retry` (0 for the first encode)."""
        return (1 - self.config.corrective_step) ** retry

    def _video_kbps(self, metadata: VideoMetadata, size_bytes: int, tightening: float) -> int:
        duration = metadata.duration_seconds
        overhead = self.config.container_overhead
        audio_kbps = self.audio_bitrate_for(metadata)

        total_bits = size_bytes * 8
        audio_bits = audio_kbps * 1000 * duration
        overhead_bits = total_bits * overhead
        raw_kbps = (total_bits - audio_bits - overhead_bits) / duration / 1000
        kbps = math.floor(raw_kbps * self.config.safety_margin * tightening)

        # Largest bitrate the size invariant allows; only binds for unusual margin/overhead settings
        ceiling = math.floor(size_bytes / (1 + overhead) * 8 / 1000 / duration - audio_kbps)
        return min(kbps, ceiling)

    def budget(self, metadata: VideoMetadata, target_size: TargetSize, tightening: float = 1.0) -> int:
        """Video bitrate ceiling in kbps. Raises InfeasibleTargetError below the floor."""
        kbps = self._video_kbps(metadata, target_size.size_bytes, tightening)
        floor = self.config.min_video_bitrate_kbps
        if kbps < floor:
            minimum = self.minimum_target_bytes(metadata, tightening)
            raise InfeasibleTargetError(
                f"Target {target_size} is too small for {metadata.duration_seconds:.1f}s of video: "
                f"{kbps} kbps is below the {floor} kbps floor (needs at least {minimum} bytes)",
                video_bitrate_kbps=kbps,
                floor_kbps=floor,
                minimum_target_bytes=minimum,
            )
        self.logger.debug(
            f"Budget for {target_size} over {metadata.duration_seconds:.1f}s: {kbps} kbps "
            f"(audio={self.audio_bitrate_for(metadata)} kbps, tightening={tightening:.3f})"
        )
        return kbps

    def minimum_target_bytes(self, metadata: VideoMetadata, tightening: float = 1.0) -> int:
        """Smallest target size for which budget() reaches the bitrate floor."""
        floor = self.config.min_video_bitrate_kbps
        audio_bps = self.audio_bitrate_for(metadata) * 1000
        scale = self.config.safety_margin * tightening
        duration = metadata.duration_seconds
        overhead = self.config.container_overhead
        size = max(
            math.ceil((floor * 1000 / scale + audio_bps) * duration / 8 / (1 - overhead)),
            math.ceil((floor * 1000 + audio_bps) * duration / 8 * (1 + overhead)),
        )
        while self._video_kbps(metadata, size, tightening) < floor:
            size += 1
        return size
