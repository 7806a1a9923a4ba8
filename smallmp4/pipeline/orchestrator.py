import logging
import threading
import concurrent.futures
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, ConfigDict
from smallmp4.config.models import AppConfig
from smallmp4.domain.errors import CompressionCancelled, SmallMp4Error
from smallmp4.domain.models import CompressionResult, EncoderPreferences, HardwareCapabilities, TargetSize
from smallmp4.infrastructure.event_bus import EventBus
from smallmp4.infrastructure.housekeeping import HousekeepingService
from smallmp4.pipeline.selector import DeviceQuota
from smallmp4.pipeline.session import CompressionSession


class BatchJob(BaseModel):
    input_path: Path
    output_path: Path


class BatchItem(BaseModel):
    """Outcome of one job in a batch: a result, or the error that ended it."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    job: BatchJob
    result: Optional[CompressionResult] = None
    error: Optional[Exception] = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result is not None


class BatchOrchestrator:
    """Runs one CompressionSession per input on a thread pool with a shared device quota."""

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        capabilities: HardwareCapabilities,
        probe,
        backend,
        housekeeping: Optional[HousekeepingService] = None,
        quota: Optional[DeviceQuota] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.capabilities = capabilities
        self.probe = probe
        self.backend = backend
        self.housekeeping = housekeeping or HousekeepingService()
        self.quota = quota or DeviceQuota(capabilities, config.general.quota_policy)
        self.logger = logging.getLogger(__name__)

        self._shutdown_requested = False
        self._sessions: List[CompressionSession] = []
        self._lock = threading.Lock()

    def cancel(self) -> None:
        """Cancels running sessions and keeps queued ones from starting."""
        with self._lock:
            self._shutdown_requested = True
            sessions = list(self._sessions)
        self.logger.info(f"Batch cancellation requested, stopping {len(sessions)} running session(s)")
        for session in sessions:
            session.cancel()

    def _process(self, job: BatchJob, target: TargetSize, preferences: EncoderPreferences) -> BatchItem:
        session = CompressionSession(
            input_path=job.input_path,
            output_path=job.output_path,
            target=target,
            preferences=preferences,
            capabilities=self.capabilities,
            probe=self.probe,
            backend=self.backend,
            config=self.config,
            event_bus=self.event_bus,
            quota=self.quota,
            housekeeping=self.housekeeping,
        )
        with self._lock:
            if self._shutdown_requested:
                return BatchItem(job=job, cancelled=True)
            self._sessions.append(session)

        try:
            return BatchItem(job=job, result=session.run())
        except CompressionCancelled as e:
            return BatchItem(job=job, error=e, cancelled=True)
        except SmallMp4Error as e:
            # Already published by the session; one bad input must not stop the batch
            return BatchItem(job=job, error=e)
        except Exception as e:
            self.logger.exception(f"Unexpected error while compressing {job.input_path}")
            return BatchItem(job=job, error=e)
        finally:
            with self._lock:
                self._sessions.remove(session)

    def run(self, jobs: List[BatchJob], target: TargetSize, preferences: EncoderPreferences) -> List[BatchItem]:
        """Compresses every job; results come back in job order."""
        for directory in {job.output_path.parent for job in jobs}:
            self.housekeeping.cleanup_temp_files(directory)

        threads = max(1, min(self.config.general.threads, len(jobs) or 1))
        self.logger.info(f"Starting batch of {len(jobs)} file(s) with {threads} thread(s), target {target}")

        with concurrent.futures.ThreadPoolExecutor(max_workers=threads) as executor:
            futures = [executor.submit(self._process, job, target, preferences) for job in jobs]
            items = [future.result() for future in futures]

        done = sum(1 for item in items if item.succeeded)
        self.logger.info(f"Batch finished: {done}/{len(items)} succeeded")
        return items
