import logging
from pathlib import Path
from typing import Optional
from rich.console import Console
from rich.logging import RichHandler

FILE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(log_file: Optional[Path] = None, debug: bool = False) -> logging.Logger:
    """Configures the root logger: rich console on stderr, optional plain log file."""
    handlers = [
        RichHandler(
            console=Console(stderr=True),
            level=logging.DEBUG if debug else logging.WARNING,
            show_path=False,
            markup=False,
        )
    ]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        file_handler.setLevel(logging.DEBUG if debug else logging.INFO)
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(message)s',
        handlers=handlers,
        force=True,
    )
    return logging.getLogger('smallmp4')
