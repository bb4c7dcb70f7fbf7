#!/usr/bin/env python3
"""
Codex Engine CLI

Command-line interface for running the Codex engine API server.
"""

import sys
import argparse
from aiohttp import web
from pathlib import Path

# Add repository root to path when run as a script
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from backend.codex_engine.config import EngineConfig
from backend.codex_engine.api import create_app
from backend.utils.logger import configure_logging


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Codex Engine API Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--log-level", default=None, help="Log level (overrides CODEX_ENGINE_LOG_LEVEL)")
    parser.add_argument("--log-dir", default=None, help="Directory for rotating log files")

    args = parser.parse_args(argv)

    # Load configuration
    try:
        config = EngineConfig.from_env()
        if args.log_level:
            config.log_level = args.log_level.upper()
        if args.log_dir:
            config.log_dir = args.log_dir
        config.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(log_level=config.log_level, log_dir=config.log_dir)

    app = create_app(config)

    print(f"""
Codex Engine API Server
  Codex home: {config.codex_home}
  Database:   {config.database_url}
  Listening:  {args.host}:{args.port}

  POST   /api/codex/sessions/{{id}}/prompt
  POST   /api/codex/sessions/{{id}}/stop
  GET    /api/codex/sessions/{{id}}/messages
  GET    /api/codex/health
""")

    web.run_app(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
