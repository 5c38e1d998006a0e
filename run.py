#  Generation Broker - Entry Point
#
#  Launches the FastAPI server via uvicorn.
#
#  Depends on: broker/app.py, broker/config.py, broker/logging_config.py
#  Used by:    (run directly)

import sys

import uvicorn

from broker.logging_config import setup_logging


def main():
    try:
        from broker.config import cfg
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(
        level=cfg("server.log_level", "INFO"),
        fmt=cfg("server.log_format", "json"),
    )

    uvicorn.run(
        "broker.app:app",
        host=cfg("server.host", "0.0.0.0"),
        port=cfg("server.port", 5300),
        reload=cfg("server.reload", False),
    )


if __name__ == "__main__":
    main()
