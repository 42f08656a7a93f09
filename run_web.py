#!/usr/bin/env python3
"""Web entry point for the agent gateway."""

import logging
import sys

from gateway.config import load_config
from gateway.logging_setup import setup_logging
from web.app import create_app


def main():
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config.json"
    config = load_config(config_path)
    setup_logging(config)
    logging.getLogger(__name__).info("Starting gateway web surface with %s", config_path)

    print("\n  Agent Gateway")
    print(f"  MCP config: {config.mcp.config_path}")
    print(f"  Sandbox: {'on' if config.sandbox.enabled else 'off'}")
    print("  Listening on http://localhost:5000\n")

    app = create_app(config)
    app.run(host="0.0.0.0", port=5000, debug=False, threaded=True)


if __name__ == "__main__":
    main()
