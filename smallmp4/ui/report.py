from typing import Any, Dict, List
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from smallmp4.domain.models import MB, HardwareCapabilities
from smallmp4.infrastructure.hardware import encoder_recommendations
from smallmp4.pipeline.orchestrator import BatchItem


def format_size(size_bytes: float) -> str:
    if size_bytes >= MB:
        return f"{size_bytes / MB:.2f} MB"
    return f"{size_bytes / 1024:.1f} KB"


def capabilities_to_dict(capabilities: HardwareCapabilities) -> Dict[str, Any]:
    return {
        "preferred_encoder": capabilities.preferred_encoder.value if capabilities.preferred_encoder else None,
        "encoders": [
            {
                "id": encoder.value,
                "name": encoder.display_name,
                "ffmpeg_codec": encoder.ffmpeg_codec,
                "family": encoder.family.value,
                "hardware": encoder.is_hardware,
                "speed_multiplier": encoder.speed_multiplier,
                "relative_memory_mb": encoder.relative_memory_mb,
            }
            for encoder in capabilities.ordered_encoders()
        ],
        "devices": [
            {
                "id": device.id,
                "name": device.name,
                "vram_mb": device.vram_mb,
                "max_concurrent_sessions": device.max_concurrent_sessions,
                "compute_capability": ".".join(str(p) for p in device.compute_capability),
            }
            for device in capabilities.devices
        ],
    }


def render_capabilities(capabilities: HardwareCapabilities, console: Console):
    table = Table(title="Available encoders")
    table.add_column("ID", style="cyan")
    table.add_column("Encoder")
    table.add_column("Speed", justify="right")
    table.add_column("Memory", justify="right")
    table.add_column("Notes", style="dim")
    for encoder in capabilities.ordered_encoders():
        name = encoder.display_name
        if encoder == capabilities.preferred_encoder:
            name = f"[bold green]{name} (preferred)[/bold green]"
        table.add_row(
            encoder.value,
            name,
            f"{encoder.speed_multiplier:.1f}x",
            f"{encoder.relative_memory_mb} MB",
            "; ".join(encoder_recommendations(encoder)),
        )
    console.print(table)

    if capabilities.devices:
        devices = Table(title="GPU devices")
        devices.add_column("ID", justify="right")
        devices.add_column("Name")
        devices.add_column("VRAM", justify="right")
        devices.add_column("Compute", justify="right")
        devices.add_column("Sessions", justify="right")
        for device in capabilities.devices:
            devices.add_row(
                str(device.id),
                device.name,
                f"{device.vram_mb} MB",
                ".".join(str(p) for p in device.compute_capability),
                str(device.max_concurrent_sessions),
            )
        console.print(devices)
    elif not any(e.is_hardware for e in capabilities.available_encoders):
        console.print(Panel("No hardware acceleration detected, software encoding only", border_style="yellow"))


def batch_to_dict(items: List[BatchItem]) -> Dict[str, Any]:
    results = []
    for item in items:
        if item.result is not None:
            results.append({"status": "completed", **item.result.summary()})
        else:
            results.append({
                "status": "cancelled" if item.cancelled else "failed",
                "input": str(item.job.input_path),
                "output": str(item.job.output_path),
                "error_kind": type(item.error).__name__ if item.error else None,
                "error": str(item.error) if item.error else None,
            })
    return {
        "succeeded": sum(1 for item in items if item.succeeded),
        "failed": sum(1 for item in items if not item.succeeded),
        "results": results,
    }


def render_summary(items: List[BatchItem], console: Console):
    table = Table(title="Compression summary")
    table.add_column("Input")
    table.add_column("Status")
    table.add_column("Size", justify="right")
    table.add_column("Target", justify="right")
    table.add_column("Encoder")
    table.add_column("Time", justify="right")
    for item in items:
        result = item.result
        if result is not None:
            table.add_row(
                item.job.input_path.name,
                "[green]done[/green]",
                format_size(result.output_bytes),
                format_size(result.target_bytes),
                result.encoder.value,
                f"{result.elapsed_seconds:.1f}s",
            )
        elif item.cancelled:
            table.add_row(item.job.input_path.name, "[yellow]cancelled[/yellow]", "-", "-", "-", "-")
        else:
            table.add_row(
                item.job.input_path.name,
                f"[red]{type(item.error).__name__ if item.error else 'failed'}[/red]",
                "-", "-", "-", "-",
            )
    console.print(table)
    for item in items:
        if item.error is not None and not item.cancelled:
            console.print(f"[red]{item.job.input_path.name}:[/red] {item.error}")
