#!/usr/bin/env python3
# backend/run_celery_worker.py
"""
Development Celery worker with an embedded beat scheduler.

Runs the stale-hold sweep and the meeting-link backfill against the local
database.
"""
import os
from pathlib import Path
import subprocess
import sys

# Add backend to path
backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

os.environ.setdefault("ENVIRONMENT", "local")

if __name__ == "__main__":
    queues = os.getenv("CELERY_QUEUES") or "booking,celery"
    print(f"Starting Celery worker, consuming queues: {queues}")

    cmd = [
        sys.executable,
        "-m",
        "celery",
        "-A",
        "app.tasks.celery_app",
        "worker",
        "--beat",
        "--loglevel=info",
        "--concurrency=2",
        "--max-tasks-per-child=100",
        "-Q",
        queues,
    ]

    subprocess.run(cmd)
