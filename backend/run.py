#!/usr/bin/env python3
# backend/run.py
"""
Development server runner.
For local development only - runs the in-process integrity scheduler.
"""
import os
from pathlib import Path
import sys

# Add backend to path
backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

# Without a worker, the API process ticks the periodic jobs itself
os.environ.setdefault("RUN_IN_PROCESS_SCHEDULER", "true")

import uvicorn

if __name__ == "__main__":
    print("🚀 Starting Smiling Steps flow integrity API...")
    print("⏰ In-process scheduler: " + os.environ["RUN_IN_PROCESS_SCHEDULER"])
    print("🌐 Access at: http://localhost:8000")
    print("📚 API Docs: http://localhost:8000/docs")

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
