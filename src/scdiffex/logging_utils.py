# src/scdiffex/logging_utils.py
import logging
from pathlib import Path
from typing import Optional, Union


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level!r}")
        return resolved
    return int(level)


def init_logging(
    logfile: Optional[Path] = None,
    level: Union[int, str] = logging.INFO,
    capture_warnings: bool = True,
) -> None:
    """
    Initialize logging with a stream handler + optional file handler.
    All existing handlers are removed to avoid duplicates.

    With capture_warnings=True, Python warnings (e.g. statsmodels convergence
    notices raised while fitting dispersion trends) are routed into the log.
    """

    # Remove any pre-configured handlers (Typer / notebooks may have installed some)
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers = [logging.StreamHandler()]

    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(
        level=_resolve_level(level),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )
    logging.captureWarnings(bool(capture_warnings))
