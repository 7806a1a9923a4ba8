import threading
from typing import Dict, List, Optional
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TextColumn, TimeElapsedColumn
from smallmp4.infrastructure.event_bus import EventBus
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
from smallmp4.domain.models import CompressionResult


class UIManager:
    """Subscribes to EventBus and drives a rich progress display, one bar per session."""

    def __init__(self, bus: EventBus, console: Optional[Console] = None, quiet: bool = False):
        self.bus = bus
        self.console = console or Console(stderr=True)
        self.quiet = quiet
        self.progress = Progress(
            TextColumn("[bold]{task.fields[name]}"),
            TextColumn("{task.fields[phase]}", style="cyan"),
            BarColumn(),
            TextColumn("{task.percentage:>5.1f}%"),
            TimeElapsedColumn(),
            console=self.console,
            disable=quiet,
        )
        self.tasks: Dict[str, TaskID] = {}
        self.messages: List[str] = []
        self.completed: List[CompressionResult] = []
        self.failed: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(PhaseChanged, self.on_phase_changed)
        self.bus.subscribe(PlanCreated, self.on_plan_created)
        self.bus.subscribe(ProgressUpdated, self.on_progress)
        self.bus.subscribe(EncoderFallback, self.on_encoder_fallback)
        self.bus.subscribe(QuotaFallback, self.on_quota_fallback)
        self.bus.subscribe(CorrectiveRetry, self.on_corrective_retry)
        self.bus.subscribe(CompressionCompleted, self.on_completed)
        self.bus.subscribe(CompressionFailed, self.on_failed)
        self.bus.subscribe(CompressionCancelledEvent, self.on_cancelled)

    def __enter__(self):
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.progress.stop()

    def _task(self, session_id: str, name: str) -> TaskID:
        with self._lock:
            if session_id not in self.tasks:
                self.tasks[session_id] = self.progress.add_task(name, total=1.0, name=name, phase="")
            return self.tasks[session_id]

    def _note(self, message: str):
        with self._lock:
            self.messages.append(message)
        if not self.quiet:
            self.progress.console.print(message)

    def on_phase_changed(self, event: PhaseChanged):
        task = self._task(event.session_id, event.input_path.name)
        self.progress.update(task, phase=event.phase.value.lower())

    def on_plan_created(self, event: PlanCreated):
        plan = event.plan
        task = self._task(event.session_id, event.input_path.name)
        self.progress.update(task, completed=0.0, phase=f"{plan.encoder.value} {plan.video_bitrate_kbps}k")

    def on_progress(self, event: ProgressUpdated):
        task = self._task(event.session_id, event.input_path.name)
        self.progress.update(task, completed=event.fraction)

    def on_encoder_fallback(self, event: EncoderFallback):
        target = event.next_encoder.value if event.next_encoder else "none left"
        self._note(
            f"[yellow]{event.input_path.name}: {event.failed_encoder.value} failed, "
            f"falling back to {target}[/yellow]"
        )

    def on_quota_fallback(self, event: QuotaFallback):
        self._note(
            f"[yellow]{event.input_path.name}: all devices busy for {event.requested_encoder.value}, "
            f"using software[/yellow]"
        )

    def on_corrective_retry(self, event: CorrectiveRetry):
        self._note(
            f"[yellow]{event.input_path.name}: {event.actual_bytes} bytes over the {event.target_bytes} byte "
            f"target, retry {event.retry} with a lower bitrate[/yellow]"
        )

    def on_completed(self, event: CompressionCompleted):
        with self._lock:
            self.completed.append(event.result)
        task = self._task(event.session_id, event.input_path.name)
        self.progress.update(task, completed=1.0, phase="done")

    def on_failed(self, event: CompressionFailed):
        with self._lock:
            self.failed[str(event.input_path)] = f"{event.error_kind}: {event.error_message}"
        task = self._task(event.session_id, event.input_path.name)
        self.progress.update(task, phase="failed")

    def on_cancelled(self, event: CompressionCancelledEvent):
        task = self._task(event.session_id, event.input_path.name)
        self.progress.update(task, phase="cancelled")
