#!/usr/bin/env python3
"""
Lending Core Entry Point

Starts the FastAPI server for the lending core. Host, port, storage backend
and logging come from LENDING_* environment variables (or .env).
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from lending_core.api import run_server
from lending_core.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Lending Core...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Lending Core...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
