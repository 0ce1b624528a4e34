"""
kcal dev toolkit
================
Local driver for the calories Lambda (app/lambdas/calories_api/handler.py):
  1. Load Airtable settings from a dotenv file (.env.local by default)
  2. Invoke the handler once from the command line
  3. Serve the handler over HTTP for widgets and apps during development

Dependencies (install via pip):
  flask>=3.0.0
  python-dotenv>=1.0.0
  requests>=2.31.0
  pydantic>=2.0.0

Example usage:
  # Copy the template and fill in real values
  cp .env.example .env.local

  # Fetch today's value once
  python reference/kcal_dev.py fetch

  # Run the API on localhost:3000
  python reference/kcal_dev.py serve --port 3000

  # In another terminal
  curl http://localhost:3000/api/calories
"""
from __future__ import annotations

import argparse
import importlib.util
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

HANDLER_PATH = (
    Path(__file__).resolve().parent.parent
    / "kcal-aws-lab" / "app" / "lambdas" / "calories_api" / "handler.py"
)
ROUTE = "/api/calories"

logger = logging.getLogger("kcal_dev")


# ---------------------------
# Handler Loading
# ---------------------------

def load_handler(path: Path = HANDLER_PATH):
    """Import the Lambda module by file path, the way the Lambda runtime sees it."""
    spec = importlib.util.spec_from_file_location("calories_handler", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def build_event(method: str = "GET", path: str = ROUTE, headers: Optional[Dict[str, str]] = None,
                query: str = "") -> Dict[str, Any]:
    """Minimal HTTP API v2 proxy event."""
    return {
        "version": "2.0",
        "routeKey": f"{method} {path}",
        "rawPath": path,
        "rawQueryString": query,
        "headers": headers or {},
        "requestContext": {
            "http": {"method": method, "path": path, "sourceIp": "127.0.0.1"},
            "requestId": "local",
        },
        "isBase64Encoded": False,
    }


# ---------------------------
# Dev Server
# ---------------------------

def create_app(handler=None):
    from flask import Flask, Response, request

    handler = handler or load_handler()
    app = Flask(__name__)

    @app.route(ROUTE, methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
    def calories():
        event = build_event(
            method=request.method,
            path=request.path,
            headers={k.lower(): v for k, v in request.headers.items()},
            query=request.query_string.decode(),
        )
        result = handler.lambda_handler(event, None)
        return Response(
            result.get("body", ""),
            status=result["statusCode"],
            headers=result.get("headers", {}),
        )

    return app


def run_server(host: str, port: int):
    app = create_app()
    print(f"[*] kcal API listening on http://{host}:{port}{ROUTE}")
    app.run(host=host, port=port, threaded=True)


# ---------------------------
# CLI Interface
# ---------------------------

def fetch_once(handler=None) -> int:
    handler = handler or load_handler()
    result = handler.lambda_handler(build_event(), None)
    body = json.loads(result["body"]) if result.get("body") else {}
    print(f"[{result['statusCode']}] {json.dumps(body, indent=2)}")
    return 0 if result["statusCode"] == 200 else 1


def cli(argv=None):
    parser = argparse.ArgumentParser(description="kcal API dev toolkit")
    parser.add_argument("--env-file", default=".env.local", help="dotenv file to load (default .env.local)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("fetch", help="Invoke the handler once and print the response")

    s = sub.add_parser("serve", help="Run the API on a local HTTP server")
    s.add_argument("--host", default="127.0.0.1", help="Bind address (default 127.0.0.1)")
    s.add_argument("--port", default=3000, type=int, help="Port (default 3000)")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    if not load_dotenv(args.env_file):
        logger.warning("No variables loaded from %s", args.env_file)

    if args.command == "fetch":
        return fetch_once()
    elif args.command == "serve":
        run_server(args.host, args.port)
    return 0


if __name__ == "__main__":
    sys.exit(cli())
