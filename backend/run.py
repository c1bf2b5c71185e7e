#!/usr/bin/env python3
# backend/run.py
"""
Development API server.

Uses fake payment and meeting providers unless the environment already
chooses real ones, so a local run never charges a wallet.
"""
import os
from pathlib import Path
import sys

# Add backend to path
backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

os.environ.setdefault("ENVIRONMENT", "local")
os.environ.setdefault("PAYMENT_PROVIDER", "fake")
os.environ.setdefault("MEETING_PROVIDER", "fake")

import uvicorn

if __name__ == "__main__":
    print("Starting HealNest booking API (payment provider: " + os.environ["PAYMENT_PROVIDER"] + ")")
    print("Access at: http://localhost:8000")
    print("API Docs: http://localhost:8000/docs")

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
