#!/usr/bin/env python3
"""
Production startup script (container entrypoint).

1. Runs migrations + seed (release.py)
2. Starts gunicorn (replaces this process via os.execvp)

Usage:
    python scripts/start.py

The gunicorn worker timeout is derived from ARTIFACT_TIMEOUT_SECONDS so an
issue request that is still rendering its locked artifact is never killed by
the worker watchdog before it can report the timeout itself.
"""

from __future__ import annotations

import math
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _port() -> str:
    port = os.environ.get("PORT", "").strip()
    if not port:
        print("WARNING: PORT not set, using default 8080", flush=True)
        port = "8080"
    try:
        port_int = int(port)
        if port_int < 1 or port_int > 65535:
            raise ValueError("Port out of range")
    except ValueError:
        print(f"ERROR: Invalid PORT value '{port}'. Must be integer 1-65535.", flush=True)
        sys.exit(1)
    return port


def worker_timeout() -> int:
    raw = (os.environ.get("ARTIFACT_TIMEOUT_SECONDS") or "30").strip()
    try:
        artifact_timeout = float(raw)
    except ValueError:
        print(f"ERROR: Invalid ARTIFACT_TIMEOUT_SECONDS value '{raw}'.", flush=True)
        sys.exit(1)
    # Headroom for validation, storage read-back and the commit after rendering.
    return max(60, math.ceil(artifact_timeout) + 30)


def main() -> None:
    port = _port()
    timeout = worker_timeout()
    print(f"PORT={port} validated; worker timeout {timeout}s", flush=True)

    print("=== Running release phase ===", flush=True)
    from scripts.release import run_release
    try:
        run_release()
    except Exception as e:
        print(f"Release failed: {e}", flush=True)
        sys.exit(1)

    print("=== Starting gunicorn ===", flush=True)
    print(f"Gunicorn binding to 0.0.0.0:{port}", flush=True)
    print("Health check endpoint ready at /healthz", flush=True)

    # exec: gunicorn becomes PID 1 and receives signals directly
    os.execvp(
        "gunicorn",
        [
            "gunicorn",
            "app.wsgi:app",
            "--bind", f"0.0.0.0:{port}",
            "--workers", "2",
            "--threads", "4",
            "--timeout", str(timeout),
            "--preload",
            "--access-logfile", "-",
            "--error-logfile", "-",
        ],
    )


if __name__ == "__main__":
    main()
