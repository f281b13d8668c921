"""
Utility functions: config loading, logging setup, and bounded polling.

Waits for externally produced data never block indefinitely: poll_until()
gives up after its ceiling and hands back whatever it last observed.
"""

import os
import math
import logging
import time as _time
import yaml
from datetime import datetime


ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LOG_DIR = os.path.join(ROOT_DIR, "logs")

LOGGER_NAME = "sheet_relay"

# Third-party loggers that would otherwise drown the relay's own output
QUIET_LOGGERS = ("werkzeug", "urllib3", "filelock")


def setup_logging() -> logging.Logger:
    """Configure and return the project logger."""
    os.makedirs(LOG_DIR, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(LOG_DIR, f"relay_{timestamp}.log")

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        return logger

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch_fmt = logging.Formatter("[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%H:%M:%S")
    ch.setFormatter(ch_fmt)

    # File handler
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh_fmt = logging.Formatter("[%(asctime)s] %(levelname)-8s %(threadName)s %(message)s")
    fh.setFormatter(fh_fmt)

    logger.addHandler(ch)
    logger.addHandler(fh)

    logger.info(f"Log file: {log_file}")
    return logger


def load_config(config_path: str = None) -> dict:
    """Load and validate config.yaml, applying safe defaults for every key."""
    if config_path is None:
        config_path = os.path.join(ROOT_DIR, "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")

    # ── State file ───────────────────────────────────────────────────
    store_file = config.setdefault("store_file", "relay_state.json")
    if not store_file or not isinstance(store_file, str):
        raise ValueError("store_file must be a non-empty path")

    # ── Network ──────────────────────────────────────────────────────
    timeout = config.setdefault("http_timeout", 15)
    if not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError(f"http_timeout must be a positive number, got {timeout!r}")

    # ── Broker server ────────────────────────────────────────────────
    config.setdefault("server_host", "127.0.0.1")
    port = config.setdefault("server_port", 8099)
    if not isinstance(port, int) or not (0 < port < 65536):
        raise ValueError(f"server_port must be an integer between 1 and 65535, got {port!r}")

    config.setdefault("headless", False)

    # ── Scraping collaborator ────────────────────────────────────────
    threshold = config.setdefault("default_threshold", 3.8)
    if not isinstance(threshold, (int, float)) or not math.isfinite(threshold):
        raise ValueError(f"default_threshold must be a number, got {threshold!r}")

    interval = config.setdefault("worker_poll_interval", 0.3)
    if not isinstance(interval, (int, float)) or interval <= 0:
        raise ValueError(f"worker_poll_interval must be positive, got {interval!r}")
    ceiling = config.setdefault("worker_wait_timeout", 10)
    if not isinstance(ceiling, (int, float)) or ceiling < 0:
        raise ValueError(f"worker_wait_timeout must be >= 0, got {ceiling!r}")

    return config


def resolve_store_path(config: dict) -> str:
    """Return the absolute path of the state file (relative paths hang off the repo root)."""
    path = config.get("store_file", "relay_state.json")
    if os.path.isabs(path):
        return path
    return os.path.join(ROOT_DIR, path)


def poll_until(check, timeout: float, interval: float = 0.3):
    """
    Call check() every `interval` seconds until it returns a truthy value
    or `timeout` seconds have passed.

    Returns the last value check() produced. On timeout this is whatever
    was observed last (possibly None / falsy) — callers proceed with it.
    """
    deadline = _time.monotonic() + timeout
    value = check()
    while not value:
        remaining = deadline - _time.monotonic()
        if remaining <= 0:
            break
        _time.sleep(min(interval, remaining))
        value = check()
    return value
