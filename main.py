#!/usr/bin/env python3
"""
Command-line entry point for the MODIVIS editing server.
"""

if __name__ == "__main__":
    import argparse

    import uvicorn

    from modivis.config import settings
    from modivis.middleware.logging import setup_logging

    parser = argparse.ArgumentParser(description="MODIVIS Editing Server")
    parser.add_argument(
        "--port",
        type=int,
        default=settings.MODIVIS_PORT,
        help=f"Port to run the server on (default: {settings.MODIVIS_PORT})",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=settings.MODIVIS_HOST,
        help=f"Host to bind to (default: {settings.MODIVIS_HOST})",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=False,
        help="Enable auto-reload for development",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="debug" if settings.MODIVIS_DEBUG else "info",
        help="Logging level (default: info)",
    )

    args = parser.parse_args()
    setup_logging(args.log_level)

    # Reload needs an import string rather than an app object
    uvicorn.run(
        "modivis.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )
