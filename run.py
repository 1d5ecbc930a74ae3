#!/usr/bin/env python3
"""
paycore Entry Point

Starts the FastAPI server with settings from PAYCORE_* environment variables.
"""

import sys

from paycore.api import run_server


if __name__ == "__main__":
    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down paycore...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
