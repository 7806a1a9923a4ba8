"""Exception hierarchy for small-mp4.

``StartupError`` subclasses mean the compression could not start (choose a
different input or target). ``GuaranteeError`` subclasses mean an encode was
started but the size ceiling could not be met (try a different encoder).
"""

from typing import Iterable, Optional


class SmallMp4Error(Exception):
    """Base exception for all small-mp4 errors."""


class ConfigError(SmallMp4Error):
    """Configuration file missing required structure or holding invalid values."""


class StartupError(SmallMp4Error):
    """Raised during Probing or Planning. Never retried."""


class ProbeError(StartupError):
    """Input unreadable, without a video stream, or with unknown duration."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class InfeasibleTargetError(StartupError):
    """Target size too small for the duration."""

    def __init__(self, message: str, video_bitrate_kbps: float, floor_kbps: int, minimum_target_bytes: int):
        self.video_bitrate_kbps = video_bitrate_kbps
        self.floor_kbps = floor_kbps
        self.minimum_target_bytes = minimum_target_bytes
        super().__init__(message)


class EncoderUnavailableError(StartupError):
    """Explicitly requested encoder was not detected."""

    def __init__(self, encoder, available: Iterable = ()):
        self.encoder = encoder
        self.available = sorted(e.value for e in available)
        super().__init__(
            f"Encoder '{encoder.value}' is not available on this system "
            f"(available: {', '.join(self.available) or 'none'})"
        )


class GuaranteeError(SmallMp4Error):
    """Raised during Encoding or Verifying after local recovery gave up."""


class BackendEncodeError(GuaranteeError):
    """Transcoding backend failed for one encoder."""

    def __init__(self, message: str, encoder=None, returncode: Optional[int] = None, stderr_tail: str = ""):
        self.encoder = encoder
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        super().__init__(message)


class EncodersExhaustedError(GuaranteeError):
    """Every candidate encoder failed."""

    def __init__(self, attempts: list):
        self.attempts = list(attempts)
        tried = ", ".join(e.value for e in self.attempts) or "none"
        super().__init__(f"All encoders failed (tried: {tried})")


class SizeOvershootError(GuaranteeError):
    """Output stayed above target after all corrective retries."""

    def __init__(self, target_bytes: int, actual_bytes: int, retries: int):
        self.target_bytes = target_bytes
        self.actual_bytes = actual_bytes
        self.retries = retries
        super().__init__(
            f"Output is {actual_bytes} bytes, above the {target_bytes} byte target "
            f"after {retries} corrective retries"
        )


class OutputWriteError(GuaranteeError):
    """Verified output could not be measured or moved onto the final path."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class CompressionCancelled(SmallMp4Error):
    """Compression stopped by an external cancellation request."""


class SessionStateError(SmallMp4Error):
    """A session was asked to move along a transition its state machine does not have."""
