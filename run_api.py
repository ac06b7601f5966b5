#!/usr/bin/env python3
"""
osgen FastAPI Server Runner

Starts the HTTP + Server-Sent Events facade for app generation.

Usage:
    python run_api.py                    # Start on default port 3001
    python run_api.py --port 8000        # Start on custom port
    python run_api.py --host 0.0.0.0     # Bind to all interfaces
    python run_api.py --reload           # Enable auto-reload for development
"""

import argparse
import os
import sys
import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Run osgen FastAPI Server")
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", 3001)),
        help="Port to bind to (default: $PORT or 3001)"
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development"
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug", "trace"],
        help="Log level (default: info)"
    )

    args = parser.parse_args()

    print(f"Starting osgen FastAPI Server...")
    print(f"Server will be available at: http://{args.host}:{args.port}")
    print(f"Tool list at: http://{args.host}:{args.port}/tools")
    print(f"API documentation at: http://{args.host}:{args.port}/docs")

    try:
        uvicorn.run(
            "main:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=args.log_level
        )
    except KeyboardInterrupt:
        print("\nServer stopped by user")
        sys.exit(0)
    except Exception as e:
        print(f"Failed to start server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
