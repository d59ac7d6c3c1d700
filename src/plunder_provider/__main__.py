"""Run the controller app with explicit args (avoids shell interpolation)."""
from __future__ import annotations

import argparse

import uvicorn

from plunder_provider.app import ControllerSettings, create_app
from plunder_provider.app.observability import configure_logging


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="plunder_provider")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--log-level", default=None)
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    configure_logging(level=args.log_level)
    app = create_app(ControllerSettings.from_env())
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
