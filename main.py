#!/usr/bin/env python3
"""
ipbound -- Session and token authority with IP-scoped bearer credentials.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 3000
  python main.py serve --reload
  python main.py sweep

Environment variables (see core/config.py):
  ACCESS_SECRET_KEY, REFRESH_SECRET_KEY   Signing secrets, >= 32 chars, must differ.
  DATABASE_URL                            SQLAlchemy URL. Defaults to ./ipbound_auth.db.
  DEBUG=true                              Auto-generate secrets for local development.
"""

import argparse
import sys

from core.config import get_settings


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _sweep(args: argparse.Namespace) -> int:
    from auth.store import TokenStore

    store = TokenStore(get_settings().database_url)
    try:
        removed = store.sweep_expired()
    finally:
        store.close()
    print(f"  Removed {removed} expired token families.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ipbound",
        description="Session and token authority with IP-scoped bearer credentials.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=3000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development).")
    serve.set_defaults(func=_serve)

    sweep = sub.add_parser("sweep", help="Delete token families past their refresh expiry, then exit.")
    sweep.set_defaults(func=_sweep)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except ValueError as e:
        # Settings validation (missing or weak secrets) lands here.
        print(f"  [!] {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
