#!/usr/bin/env python3
"""
Internal Transfers Entry Point

Starts the FastAPI server with settings taken from TRANSFERS_* environment
variables or a .env file.
"""

import sys

from internal_transfers.api import run_server
from internal_transfers.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Internal Transfers service...")
    print(f"Database: {config.database_url.split('@')[-1]}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print()

    try:
        run_server(config)
    except KeyboardInterrupt:
        print("\nShutting down Internal Transfers service...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
