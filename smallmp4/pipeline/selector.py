import logging
import threading
from collections import deque
from typing import Dict, List, NamedTuple, Optional
from smallmp4.config.models import QuotaPolicy
from smallmp4.domain.errors import CompressionCancelled, EncoderUnavailableError
from smallmp4.domain.models import EncoderChoice, EncoderPreferences, HardwareCapabilities

logger = logging.getLogger(__name__)


def select(preferences: EncoderPreferences, capabilities: HardwareCapabilities) -> EncoderChoice:
    """Resolves the encoder for a session. Pure: same inputs, same answer."""
    if preferences.force_software:
        return EncoderChoice.SOFTWARE
    if preferences.encoder is not None:
        if preferences.encoder in capabilities.available_encoders:
            return preferences.encoder
        # An explicit choice is never silently replaced
        raise EncoderUnavailableError(preferences.encoder, capabilities.available_encoders)
    return capabilities.preferred_encoder or EncoderChoice.SOFTWARE


class FallbackOrchestrator:
    """
    Trying(enc) -> Trying(next untried in priority order) -> ... -> Trying(Software) -> Exhausted.

    Only the encoder changes between attempts; bitrate and quality come from
    the same budget for every attempt.
    """

    def __init__(self, initial: EncoderChoice, capabilities: HardwareCapabilities, allow_fallback: bool = True):
        self.capabilities = capabilities
        self.allow_fallback = allow_fallback and initial is not EncoderChoice.SOFTWARE
        self.current: Optional[EncoderChoice] = initial
        self.tried: List[EncoderChoice] = []

    @property
    def exhausted(self) -> bool:
        return self.current is None

    def candidates(self) -> List[EncoderChoice]:
        """Remaining encoders in the order they will be tried."""
        if not self.allow_fallback:
            return []
        ordered = [e for e in self.capabilities.ordered_encoders() if e.is_hardware]
        ordered.append(EncoderChoice.SOFTWARE)
        return [e for e in ordered if e not in self.tried and e != self.current]

    def spilled(self, requested: EncoderChoice) -> None:
        """A busy device handed out Software instead of `requested`; the chain has reached Software."""
        if requested not in self.tried:
            self.tried.append(requested)
        self.current = EncoderChoice.SOFTWARE

    def mark_failed(self, encoder: EncoderChoice, reason: str) -> Optional[EncoderChoice]:
        """Records a backend failure and moves to the next candidate; None means Exhausted."""
        if encoder not in self.tried:
            self.tried.append(encoder)
        # Software is the last link of the chain
        remaining = self.candidates() if encoder is not EncoderChoice.SOFTWARE else []
        self.current = remaining[0] if remaining else None
        if self.current is None:
            logger.warning(f"Encoder {encoder.value} failed ({reason}); no encoders left to try")
        else:
            logger.warning(f"Encoder {encoder.value} failed ({reason}); falling back to {self.current.value}")
        return self.current


class DeviceLease(NamedTuple):
    encoder: EncoderChoice
    device_id: Optional[int] = None
    requested: Optional[EncoderChoice] = None

    @property
    def fell_back(self) -> bool:
        return self.requested is not None and self.requested != self.encoder


class DeviceQuota:
    """
    Per-device encode session slots shared by concurrent sessions.

    Encoders with enumerated devices take the first device that has a free
    slot. When every device is busy the policy decides: SOFTWARE hands out a
    software lease at once, QUEUE blocks callers in arrival order.
    """

    def __init__(
        self,
        capabilities: HardwareCapabilities,
        policy: QuotaPolicy = QuotaPolicy.SOFTWARE,
        poll_interval: float = 0.2,
    ):
        self.capabilities = capabilities
        self.policy = policy
        self.poll_interval = poll_interval
        self._in_use: Dict[int, int] = {d.id: 0 for d in capabilities.devices}
        self._limits: Dict[int, int] = {d.id: d.max_concurrent_sessions for d in capabilities.devices}
        self._waiting: deque = deque()
        self._cond = threading.Condition()

    def in_use(self, device_id: int) -> int:
        with self._cond:
            return self._in_use.get(device_id, 0)

    def _free_device(self, encoder: EncoderChoice) -> Optional[int]:
        for device in self.capabilities.devices_for(encoder):
            if self._in_use[device.id] < self._limits[device.id]:
                return device.id
        return None

    def acquire(self, encoder: EncoderChoice, cancel: Optional[threading.Event] = None) -> DeviceLease:
        devices = self.capabilities.devices_for(encoder)
        if not devices:
            return DeviceLease(encoder=encoder)

        with self._cond:
            device_id = self._free_device(encoder)
            if device_id is None and self.policy is QuotaPolicy.SOFTWARE:
                logger.info(
                    f"All devices for {encoder.value} are at their session limit, using software encoder"
                )
                return DeviceLease(encoder=EncoderChoice.SOFTWARE, requested=encoder)

            if device_id is None:
                ticket = object()
                self._waiting.append(ticket)
                logger.info(f"All devices for {encoder.value} are busy, queued ({len(self._waiting)} waiting)")
                try:
                    while True:
                        if cancel is not None and cancel.is_set():
                            raise CompressionCancelled("Cancelled while waiting for a device slot")
                        if self._waiting[0] is ticket:
                            device_id = self._free_device(encoder)
                            if device_id is not None:
                                break
                        self._cond.wait(self.poll_interval)
                finally:
                    self._waiting.remove(ticket)
                    self._cond.notify_all()

            self._in_use[device_id] += 1
            logger.debug(f"Acquired slot on device {device_id} for {encoder.value}")
            return DeviceLease(encoder=encoder, device_id=device_id, requested=encoder)

    def release(self, lease: DeviceLease) -> None:
        if lease.device_id is None:
            return
        with self._cond:
            self._in_use[lease.device_id] = max(0, self._in_use[lease.device_id] - 1)
            self._cond.notify_all()
