#!/usr/bin/env python3
"""JobBoard chat relay server.

Config from env vars:
    JOBBOARD_RELAY_HOST      bind address (default 0.0.0.0)
    JOBBOARD_RELAY_PORT      port (default 3001)
    JOBBOARD_RELAY_ORIGINS   comma-separated CORS origins (default *)
"""

import logging
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn

from relay.app import create_app

HOST = os.environ.get("JOBBOARD_RELAY_HOST", "0.0.0.0")
PORT = int(os.environ.get("JOBBOARD_RELAY_PORT", "3001"))


def main(host: str = HOST, port: int = PORT, verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    origins = os.environ.get("JOBBOARD_RELAY_ORIGINS", "*")
    app = create_app()
    if origins.strip() == "*":
        print("[relay] WARNING: CORS allows all origins (set JOBBOARD_RELAY_ORIGINS to restrict)")
    print("[relay] Rooms are live-only, nothing is stored")
    print(f"[relay] Listening on {host}:{port} (ws://{host}:{port}/ws)")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main(verbose="-v" in sys.argv[1:])
