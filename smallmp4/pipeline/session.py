import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, FrozenSet, Optional
from smallmp4.config.models import AppConfig
from smallmp4.domain.errors import (
    BackendEncodeError,
    CompressionCancelled,
    EncodersExhaustedError,
    InfeasibleTargetError,
    OutputWriteError,
    ProbeError,
    SessionStateError,
    SizeOvershootError,
    StartupError,
)
from smallmp4.domain.events import (
    CompressionCancelledEvent,
    CompressionCompleted,
    CompressionFailed,
    CorrectiveRetry,
    EncoderFallback,
    PhaseChanged,
    PlanCreated,
    ProgressUpdated,
    QuotaFallback,
)
from smallmp4.domain.models import (
    CompressionResult,
    EncodePlan,
    EncoderChoice,
    EncoderPreferences,
    HardwareCapabilities,
    SessionPhase,
    TargetSize,
    VideoMetadata,
)
from smallmp4.infrastructure.event_bus import EventBus
from smallmp4.infrastructure.housekeeping import HousekeepingService
from smallmp4.pipeline.budget import BitrateBudgeter
from smallmp4.pipeline.estimator import SizeEstimator
from smallmp4.pipeline.selector import DeviceLease, DeviceQuota, FallbackOrchestrator, select

P = SessionPhase

TRANSITIONS: Dict[SessionPhase, FrozenSet[SessionPhase]] = {
    P.CREATED: frozenset({P.PROBING}),
    P.PROBING: frozenset({P.PLANNING, P.FAILED, P.CANCELLED}),
    P.PLANNING: frozenset({P.ENCODING, P.FAILED, P.CANCELLED}),
    # back to PLANNING: fallback encoder after a backend failure
    P.ENCODING: frozenset({P.VERIFYING, P.PLANNING, P.FAILED, P.CANCELLED}),
    # back to PLANNING: corrective pass after a size overshoot
    P.VERIFYING: frozenset({P.COMPLETED, P.PLANNING, P.FAILED}),
    P.COMPLETED: frozenset(),
    P.FAILED: frozenset(),
    P.CANCELLED: frozenset(),
}


class CompressionSession:
    """
    One compression of one input, driven through an explicit state machine.

    Created -> Probing -> Planning -> Encoding -> Verifying -> Completed, with
    Failed and Cancelled as the other terminal states. A session runs once;
    compress again with a new session.
    """

    def __init__(
        self,
        input_path: Path,
        output_path: Path,
        target: TargetSize,
        preferences: EncoderPreferences,
        capabilities: HardwareCapabilities,
        probe,
        backend,
        config: Optional[AppConfig] = None,
        event_bus: Optional[EventBus] = None,
        quota: Optional[DeviceQuota] = None,
        housekeeping: Optional[HousekeepingService] = None,
        session_id: Optional[str] = None,
    ):
        self.input_path = input_path
        self.output_path = output_path
        self.target = target
        self.preferences = preferences
        self.capabilities = capabilities
        self.probe = probe
        self.backend = backend
        self.config = config or AppConfig()
        self.event_bus = event_bus or EventBus()
        self.quota = quota or DeviceQuota(capabilities, self.config.general.quota_policy)
        self.housekeeping = housekeeping or HousekeepingService()
        self.session_id = session_id or uuid.uuid4().hex[:8]

        general = self.config.general
        self.budgeter = BitrateBudgeter(general)
        self.estimator = SizeEstimator(self.config.estimator, general.audio_bitrate_kbps, general.container_overhead)

        self.phase = SessionPhase.CREATED
        self.plan: Optional[EncodePlan] = None
        self.metadata: Optional[VideoMetadata] = None
        self.progress = 0.0
        self.attempts = 0
        self.corrective_retries = 0
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self.temp_path = self.housekeeping.temp_path_for(output_path)
        self.logger = logging.getLogger(__name__)

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Requests cancellation; observed at phase boundaries and inside the backend."""
        self.logger.info(f"[{self.session_id}] Cancellation requested for {self.input_path.name}")
        self._cancel.set()

    def _transition(self, phase: SessionPhase) -> None:
        with self._lock:
            previous = self.phase
            if phase not in TRANSITIONS[previous]:
                raise SessionStateError(f"Invalid session transition {previous.value} -> {phase.value}")
            self.phase = phase
        self.logger.debug(f"[{self.session_id}] {previous.value} -> {phase.value}")
        self.event_bus.publish(PhaseChanged(
            session_id=self.session_id, input_path=self.input_path, previous=previous, phase=phase
        ))

    def _check_cancel(self) -> None:
        if self._cancel.is_set():
            raise CompressionCancelled(f"Compression of {self.input_path.name} cancelled")

    def _on_progress(self, fraction: float) -> None:
        fraction = max(0.0, min(1.0, fraction))
        self.progress = fraction
        self.event_bus.publish(ProgressUpdated(
            session_id=self.session_id, input_path=self.input_path, fraction=fraction
        ))

    def run(self) -> CompressionResult:
        """Runs the session to a terminal phase; raises the error that ended it, if any."""
        start_time = time.monotonic()
        self._transition(SessionPhase.PROBING)
        try:
            result = self._execute(start_time)
        except CompressionCancelled:
            self.housekeeping.discard(self.temp_path)
            self._transition(SessionPhase.CANCELLED)
            self.event_bus.publish(CompressionCancelledEvent(session_id=self.session_id, input_path=self.input_path))
            raise
        except Exception as e:
            self.housekeeping.discard(self.temp_path)
            if not self.phase.is_terminal:
                self._transition(SessionPhase.FAILED)
            kind = type(e).__name__
            self.logger.error(f"[{self.session_id}] {self.input_path.name} failed: {kind}: {e}")
            self.event_bus.publish(CompressionFailed(
                session_id=self.session_id,
                input_path=self.input_path,
                error_kind=kind,
                error_message=str(e),
                could_not_start=isinstance(e, StartupError),
            ))
            raise
        self.event_bus.publish(CompressionCompleted(
            session_id=self.session_id, input_path=self.input_path, result=result
        ))
        return result

    def _plan(self, encoder: EncoderChoice, video_kbps: int, quality: Optional[int], lease: DeviceLease) -> EncodePlan:
        general = self.config.general
        return EncodePlan(
            video_bitrate_kbps=video_kbps,
            audio_bitrate_kbps=self.budgeter.audio_bitrate_for(self.metadata),
            quality_param=quality,
            encoder=encoder,
            hw_device_id=lease.device_id,
            preset=general.preset,
            two_pass=encoder is EncoderChoice.SOFTWARE and general.two_pass_software and quality is None,
            duration_seconds=self.metadata.duration_seconds,
            target_bytes=self.target.size_bytes,
            container_overhead=general.container_overhead,
        )

    def _execute(self, start_time: float) -> CompressionResult:
        general = self.config.general

        # Probing
        self._check_cancel()
        self.metadata = self.probe.probe(self.input_path)
        try:
            input_bytes = self.input_path.stat().st_size
        except OSError as e:
            raise ProbeError(f"Cannot read {self.input_path.name}: {e}", path=str(self.input_path)) from e
        self._check_cancel()

        # Planning
        self._transition(SessionPhase.PLANNING)
        encoder = select(self.preferences, self.capabilities)
        quality = None
        if self.preferences.auto_quality:
            quality = self.estimator.recommend_quality_for_size(self.metadata, self.target, encoder)
            self.logger.info(f"[{self.session_id}] Estimator recommends quality {quality} for {encoder.value}")
        video_kbps = self.budgeter.budget(self.metadata, self.target)
        explicit = self.preferences.encoder is not None and not self.preferences.force_software
        fallback = FallbackOrchestrator(
            encoder,
            self.capabilities,
            allow_fallback=not explicit or general.fallback_on_explicit,
        )

        while True:
            self._check_cancel()
            lease = self.quota.acquire(encoder, self._cancel)
            if lease.fell_back:
                fallback.spilled(encoder)
                self.event_bus.publish(QuotaFallback(
                    session_id=self.session_id,
                    input_path=self.input_path,
                    requested_encoder=encoder,
                    device_ids=[d.id for d in self.capabilities.devices_for(encoder)],
                ))
            try:
                self.plan = self._plan(lease.encoder, video_kbps, quality, lease)
                self.event_bus.publish(PlanCreated(
                    session_id=self.session_id, input_path=self.input_path, plan=self.plan
                ))

                # Encoding
                self._transition(SessionPhase.ENCODING)
                self.attempts += 1
                self.progress = 0.0
                outcome = self.backend.encode(
                    self.plan, self.input_path, self.temp_path, progress=self._on_progress, cancel=self._cancel
                )
            finally:
                self.quota.release(lease)

            if outcome.cancelled or self._cancel.is_set():
                raise CompressionCancelled(f"Compression of {self.input_path.name} cancelled")

            if not outcome.success:
                self.housekeeping.discard(self.temp_path)
                error = BackendEncodeError(
                    outcome.error_message or "Encoder failed",
                    encoder=self.plan.encoder,
                    returncode=outcome.returncode,
                    stderr_tail=outcome.error_message or "",
                )
                reason = f"exit code {outcome.returncode}"
                next_encoder = fallback.mark_failed(self.plan.encoder, reason)
                self.event_bus.publish(EncoderFallback(
                    session_id=self.session_id,
                    input_path=self.input_path,
                    failed_encoder=self.plan.encoder,
                    next_encoder=next_encoder,
                    reason=str(error),
                ))
                if next_encoder is None:
                    raise EncodersExhaustedError(fallback.tried) from error
                self._transition(SessionPhase.PLANNING)
                encoder = next_encoder
                continue

            # Verifying
            self._transition(SessionPhase.VERIFYING)
            try:
                actual = self.temp_path.stat().st_size
                fits = actual <= self.target.size_bytes
                if fits:
                    self.temp_path.replace(self.output_path)
            except OSError as e:
                raise OutputWriteError(
                    f"Cannot finalize {self.output_path.name}: {e}", path=str(self.output_path)
                ) from e
            if fits:
                self._transition(SessionPhase.COMPLETED)
                result = CompressionResult(
                    input_path=self.input_path,
                    output_path=self.output_path,
                    input_bytes=input_bytes,
                    output_bytes=actual,
                    target_bytes=self.target.size_bytes,
                    encoder=self.plan.encoder,
                    video_bitrate_kbps=self.plan.video_bitrate_kbps,
                    quality_param=self.plan.quality_param,
                    attempts=self.attempts,
                    corrective_retries=self.corrective_retries,
                    elapsed_seconds=time.monotonic() - start_time,
                )
                self.logger.info(
                    f"[{self.session_id}] {self.input_path.name} -> {self.output_path.name}: "
                    f"{actual} bytes <= {self.target.size_bytes} with {self.plan.encoder.value}"
                )
                return result

            self.housekeeping.discard(self.temp_path)
            if self.corrective_retries >= general.max_corrective_retries:
                raise SizeOvershootError(self.target.size_bytes, actual, self.corrective_retries)

            self.corrective_retries += 1
            self.logger.warning(
                f"[{self.session_id}] Output {actual} bytes exceeds target {self.target.size_bytes}, "
                f"corrective retry {self.corrective_retries}/{general.max_corrective_retries}"
            )
            self.event_bus.publish(CorrectiveRetry(
                session_id=self.session_id,
                input_path=self.input_path,
                retry=self.corrective_retries,
                actual_bytes=actual,
                target_bytes=self.target.size_bytes,
            ))
            self._transition(SessionPhase.PLANNING)
            try:
                video_kbps = self.budgeter.budget(
                    self.metadata, self.target, self.budgeter.tightening_for(self.corrective_retries)
                )
            except InfeasibleTargetError as e:
                raise SizeOvershootError(self.target.size_bytes, actual, self.corrective_retries) from e
