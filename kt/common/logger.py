import logging
import os
from pathlib import Path
from logging.handlers import RotatingFileHandler
from kt.common.setup import PATHS
from datetime import datetime

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(filename)s:%(lineno)d] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Attaches the handler built by `factory` unless one with the same name is already on the logger, so calling
# get_logger() again (tests, reloads) never duplicates output.
def _attach(logger, handler_name, factory, level, fmt):
    if any(h.get_name() == handler_name for h in logger.handlers):
        return None
    handler = factory()
    handler.setLevel(level)
    handler.setFormatter(fmt)
    handler.set_name(handler_name)
    logger.addHandler(handler)
    return handler

# Keeps only the newest `keep` per-run debug logs.
def _prune_runs(run_dir: Path, name, keep):
    runs = sorted(run_dir.glob(f"{name}_*.log"), key=lambda p: p.stat().st_mtime, reverse=True)
    for run in runs[keep:]:
        try:
            run.unlink()
        except OSError:
            logging.getLogger(name).debug(f"Could not remove old debug log '{run}'")

def get_logger(
        name = "karttimer",
        level = logging.INFO,
        log_dir: Path | None = None,
        max_bytes = 2 * 1024 * 1024,
        backup_count = 10,
        console = False,
        historical_debugs: int = 10
) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.propagate = False
    logger.setLevel(min(level, logging.DEBUG) if historical_debugs > 0 else level)

    log_dir = log_dir or PATHS.logs
    log_dir.mkdir(parents=True, exist_ok=True)
    fmt = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)

    # Rolling log across every shift on this device
    _attach(logger, f"{name}:persistent", lambda: RotatingFileHandler(
        filename=log_dir / f"{name}.log", maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    ), level, fmt)

    # Just this run, overwritten on every start
    _attach(logger, f"{name}:latest", lambda: logging.FileHandler(
        filename=log_dir / "latest.log", mode="w", encoding="utf-8"
    ), level, fmt)

    # Full debug output, one file per run
    if historical_debugs > 0:
        run_dir = log_dir / "debug"
        run_dir.mkdir(parents=True, exist_ok=True)
        added = _attach(logger, f"{name}:historical_debug", lambda: logging.FileHandler(
            filename=run_dir / f"{name}_{datetime.now():%Y-%m-%d_%H-%M-%S}.log", encoding="utf-8"
        ), logging.DEBUG, fmt)
        if added is not None:
            _prune_runs(run_dir, name, historical_debugs)

    if console:
        _attach(logger, f"{name}:console", logging.StreamHandler, level, fmt)

    return logger

# KT_LOG_LEVEL picks the level of the persistent/latest logs (debug always goes to the per-run file), and
# KT_LOG_CONSOLE=1 mirrors the log to stderr, handy when running the station board from a terminal.
def _env_level(default=logging.INFO):
    level = logging.getLevelName(os.getenv("KT_LOG_LEVEL", "").upper())
    return level if isinstance(level, int) else default

log = get_logger(level=_env_level(), console=os.getenv("KT_LOG_CONSOLE") == "1", historical_debugs=10)
log.info("=== STATION BOARD STARTED ===")
