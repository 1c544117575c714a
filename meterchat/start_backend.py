#!/usr/bin/env python3
"""
Backend startup wrapper for meterchat.

Runs the FastAPI app under uvicorn. HOST and PORT come from the environment.
"""
import os
import sys

import uvicorn


def main():
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))

    print("[Backend] Starting meterchat backend")
    print(f"[Backend] Server: http://{host}:{port}")
    print("[Backend] Press CTRL+C to stop")

    try:
        uvicorn.run(
            "meterchat.main:app",
            host=host,
            port=port,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Backend] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
