#!/usr/bin/env python3
"""
Service Entrypoint

This script determines which process to run based on the SERVICE_TYPE
environment variable.

SERVICE_TYPE values:
  - worker (default): Run the scheduled generation worker
  - once: Run a single batch and exit (BATCH_LIMIT jobs, default 1)
"""

import os
import sys

SERVICE_TYPE = os.environ.get("SERVICE_TYPE", "worker")
BATCH_LIMIT = os.environ.get("BATCH_LIMIT", "1")

print("=" * 50)
print(f"Story Generation Service: {SERVICE_TYPE}")
print("=" * 50)

if SERVICE_TYPE == "worker":
    print("Starting scheduled generation worker...")
    cmd = [sys.executable, "-m", "storyhub.jobs.run_worker"]
elif SERVICE_TYPE == "once":
    print(f"Running one batch (limit {BATCH_LIMIT})...")
    cmd = [sys.executable, "-m", "storyhub.jobs.run_once", "--limit", BATCH_LIMIT]
    if os.environ.get("WITH_AUDIO", "").lower() in ("true", "1", "yes", "on"):
        cmd.append("--with-audio")
else:
    print(f"ERROR: Unknown SERVICE_TYPE: {SERVICE_TYPE}")
    print("Valid values: worker, once")
    sys.exit(1)

print(f"Running: {' '.join(cmd)}")
print("=" * 50)

# Replace this process with the actual command
os.execvp(cmd[0], cmd)
