"""TaskNova command-line entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .config import AppConfig, load_config
from .dashboard import create_app
from .session import AppSession


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a TaskNova session")
    parser.add_argument("--config", default="config/config.yaml", help="Path to config YAML")
    parser.add_argument("--account", default=None, help="Sign in to an existing account id")
    parser.add_argument("--guest", action="store_true", help="Start a local-only guest account")
    parser.add_argument("--register", nargs=2, metavar=("NAME", "EMAIL"), default=None, help="Register a new account")
    parser.add_argument("--serve", action="store_true", help="Serve the status API after sign-in")
    parser.add_argument("--host", default=None, help="Status API host override")
    parser.add_argument("--port", type=int, default=None, help="Status API port override")
    return parser.parse_args()


async def _serve(session: AppSession, config: AppConfig, host: str | None, port: int | None) -> None:
    import uvicorn

    app = create_app(
        session_provider=lambda: session,
        jsonl_path=str(session.logger.output_path),
        event_limit=config.logging.recent_event_limit,
    )
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=host or config.dashboard.host,
            port=port or config.dashboard.port,
            log_level="warning",
        )
    )
    await server.serve()


async def _run(args: argparse.Namespace, config: AppConfig) -> dict[str, Any]:
    session = AppSession(config)
    try:
        if args.register:
            name, email = args.register
            await session.register(name, email)
        elif args.guest:
            await session.start_guest()
        elif args.account:
            await session.sign_in(args.account)
        if args.serve and not config.dashboard.enabled:
            session.notices.warning("Status API is disabled in config (dashboard.enabled).", code="dashboard_disabled")
        elif args.serve:
            await _serve(session, config, args.host, args.port)
        summary = await session.summary()
        summary["notices"] = [notice.message for notice in session.notices.items()]
        return summary
    finally:
        session.close()


def main() -> int:
    load_dotenv()
    args = _parse_args()

    os.chdir(Path(__file__).resolve().parents[2])

    config = load_config(args.config)
    summary = asyncio.run(_run(args, config))

    print("=== TaskNova session ===")
    print(f"run_id: {summary.get('run_id')}")
    account = summary.get("account")
    if account is None:
        print("account: none (use --register, --guest or --account)")
    else:
        print(f"account: {account['id']} ({'guest' if account['is_guest'] else account['email']})")
        print(f"balance: {summary.get('balance')}")
        print(f"week_start: {summary.get('week_start')}")
        print(f"records: {summary.get('record_counts')}")
        print(f"ledger_entries: {summary.get('ledger_entries')}")
    for message in summary.get("notices", []):
        print(f"notice: {message}")
    print(f"log_path: {summary.get('log_path')}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
