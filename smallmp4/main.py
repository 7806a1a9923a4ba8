import json
import logging
import threading
from pathlib import Path
from typing import List, Optional, Set
import typer
from rich.console import Console
from smallmp4.config.loader import load_config
from smallmp4.domain.errors import ConfigError, GuaranteeError, StartupError
from smallmp4.domain.events import HardwareDetected
from smallmp4.domain.models import EncoderChoice, EncoderPreferences, EncoderPreset, HardwareCapabilities, MB, TargetSize
from smallmp4.infrastructure.event_bus import EventBus
from smallmp4.infrastructure.ffmpeg import FFmpegAdapter
from smallmp4.infrastructure.ffprobe import FFprobeAdapter
from smallmp4.infrastructure.hardware import HardwareRegistry
from smallmp4.infrastructure.housekeeping import HousekeepingService
from smallmp4.infrastructure.logging import setup_logging
from smallmp4.pipeline.orchestrator import BatchItem, BatchJob, BatchOrchestrator
from smallmp4.ui.manager import UIManager
from smallmp4.ui.report import batch_to_dict, capabilities_to_dict, render_capabilities, render_summary

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_COULD_NOT_START = 2
EXIT_SIZE_NOT_GUARANTEED = 3
EXIT_CANCELLED = 130

app = typer.Typer(
    help="small-mp4: compress videos to MP4 files that never exceed a target size.",
    add_completion=False,
    no_args_is_help=True,
)

registry = HardwareRegistry()


def _parse_encoder(value: str) -> Optional[EncoderChoice]:
    if value.lower() == "auto":
        return None
    try:
        return EncoderChoice(value.lower())
    except ValueError:
        choices = ", ".join(e.value for e in EncoderChoice)
        raise typer.BadParameter(f"Unknown encoder '{value}'. Choose auto or one of: {choices}")


def _parse_size(value: Optional[str], default_mb: float) -> TargetSize:
    if value is None:
        return TargetSize(size_bytes=int(default_mb * MB))
    try:
        return TargetSize.parse(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def _build_jobs(inputs: List[Path], output: Optional[Path], housekeeping: HousekeepingService) -> List[BatchJob]:
    if output is not None and len(inputs) == 1 and not output.is_dir():
        return [BatchJob(input_path=inputs[0], output_path=output)]
    if output is not None:
        output.mkdir(parents=True, exist_ok=True)
    # Inputs sharing a stem must not share an output or temp file
    taken: Set[Path] = set()
    return [
        BatchJob(input_path=path, output_path=housekeeping.default_output_path(path, output, taken))
        for path in inputs
    ]


def exit_code_for(items: List[BatchItem]) -> int:
    if any(item.cancelled for item in items):
        return EXIT_CANCELLED
    if any(isinstance(item.error, GuaranteeError) for item in items):
        return EXIT_SIZE_NOT_GUARANTEED
    if any(isinstance(item.error, StartupError) for item in items):
        return EXIT_COULD_NOT_START
    if any(item.error is not None for item in items):
        return EXIT_UNEXPECTED
    return EXIT_OK


@app.command()
def compress(
    inputs: List[Path] = typer.Argument(..., help="Video file(s) to compress"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file (single input) or directory"),
    size: Optional[str] = typer.Option(None, "--size", "-s", help="Target size: 1mb, 5mb, 10mb, 30mb, 50mb or any value such as 750kb"),
    encoder: str = typer.Option("auto", "--encoder", "-e", help="Encoder id (see list-hw) or auto"),
    force_software: bool = typer.Option(False, "--force-software", help="Always use the software encoder"),
    auto_quality: bool = typer.Option(False, "--auto-quality", help="Let the size estimator pick a quality level"),
    preset: Optional[EncoderPreset] = typer.Option(None, "--preset", "-p", help="Encoder speed/quality preset"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    threads: Optional[int] = typer.Option(None, "--threads", "-t", help="Number of files compressed concurrently"),
    json_output: bool = typer.Option(False, "--json", help="Print a machine-readable JSON summary"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also write logs to this file"),
):
    """Compress video(s) so that each output stays at or below the target size."""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_COULD_NOT_START)

    # Apply CLI overrides
    if threads:
        config.general.threads = threads
    if preset:
        config.general.preset = preset
    if debug:
        config.general.debug = True

    target = _parse_size(size, config.general.target_size_mb)
    preferences = EncoderPreferences(
        encoder=_parse_encoder(encoder),
        force_software=force_software,
        auto_quality=auto_quality,
    )

    logger = setup_logging(log_file, debug=config.general.debug)
    logger.info(f"small-mp4 started: inputs={len(inputs)}, target={target}, encoder={encoder}")

    bus = EventBus()
    if preferences.force_software:
        capabilities = HardwareCapabilities.software_only()
    else:
        capabilities = registry.detect()
    bus.publish(HardwareDetected(capabilities=capabilities))

    housekeeping = HousekeepingService()
    jobs = _build_jobs(inputs, output, housekeeping)
    orchestrator = BatchOrchestrator(
        config=config,
        event_bus=bus,
        capabilities=capabilities,
        probe=FFprobeAdapter(),
        backend=FFmpegAdapter(),
        housekeeping=housekeeping,
    )

    items: List[BatchItem] = []
    errors: List[BaseException] = []

    def worker():
        try:
            items.extend(orchestrator.run(jobs, target, preferences))
        except Exception as e:
            errors.append(e)

    ui = UIManager(bus, quiet=json_output)
    worker_thread = threading.Thread(target=worker, name="small-mp4-batch")
    with ui:
        worker_thread.start()
        while worker_thread.is_alive():
            try:
                worker_thread.join(timeout=0.2)
            except KeyboardInterrupt:
                typer.echo("\nInterrupted by user, stopping encoders...", err=True)
                orchestrator.cancel()

    if errors:
        logging.getLogger(__name__).error("Unexpected error during compression", exc_info=errors[0])
        typer.secho(f"Fatal Error: {errors[0]}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_UNEXPECTED)

    if json_output:
        typer.echo(json.dumps(batch_to_dict(items), indent=2))
    else:
        render_summary(items, Console())

    code = exit_code_for(items)
    if code != EXIT_OK:
        raise typer.Exit(code=code)


@app.command("list-hw")
def list_hw(
    json_output: bool = typer.Option(False, "--json", help="Print capabilities as JSON"),
    refresh: bool = typer.Option(False, "--refresh", help="Re-run hardware detection"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """List detected hardware encoders and GPU devices."""
    setup_logging(debug=debug)
    capabilities = registry.detect(refresh=refresh)
    if json_output:
        typer.echo(json.dumps(capabilities_to_dict(capabilities), indent=2))
    else:
        render_capabilities(capabilities, Console())


if __name__ == "__main__":
    app()
