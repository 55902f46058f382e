from __future__ import annotations

import logging
import sys

_FMT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    # Idempotent: the server lifespan and the CLI may both call this.
    if any(getattr(h, "_guiloop", False) for h in root.handlers):
        root.setLevel(level)
        return
    h = logging.StreamHandler(sys.stderr)
    h.setFormatter(logging.Formatter(_FMT, datefmt="%H:%M:%S"))
    h._guiloop = True  # type: ignore[attr-defined]
    root.addHandler(h)
    root.setLevel(level)

    # Quiet chatty client libraries unless asked.
    if not verbose:
        for noisy in ("httpx", "httpcore", "google_genai", "openai"):
            logging.getLogger(noisy).setLevel(logging.WARNING)
