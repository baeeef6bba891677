#!/usr/bin/env python3
"""Follow the deal board from the terminal.

Usage:
    uv run python scripts/watch_board.py --user-id 1 --token <jwt>
    uv run python scripts/watch_board.py --pipeline-id 2 --api-url http://localhost:8000

Runs a DealBoardSync session: polls the board, listens on the broadcast
channel, and prints every deal that changes plus incoming notifications.
API_BASE_URL and WS_URL from the environment or .env are used as defaults.
Stop with Ctrl+C.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.dealflow
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


def _print_changes(results) -> None:
    for result in results:
        if not result.changed_fields and not result.created:
            continue
        _, deal_id = result.key
        label = "new" if result.created else ", ".join(result.changed_fields)
        suffix = f"  (diverged: {', '.join(result.diverged_fields)})" if result.diverged_fields else ""
        print(f"deal {deal_id}: {label}{suffix}")


def _print_notification(payload: dict) -> None:
    print(f"[notification] {payload.get('title')}: {payload.get('message')}")


async def watch(api_url: str, ws_url: str, token: str | None, user_id: int | None, pipeline_id: int | None) -> None:
    from src.dealflow.client import DealBoardSync, DealSyncApi
    from src.dealflow.config import get_settings

    settings = get_settings()
    async with DealSyncApi(api_url, token=token) as api:
        session = DealBoardSync(
            api,
            ws_url,
            user_id=user_id,
            pipeline_id=pipeline_id,
            board_interval=settings.BOARD_POLL_INTERVAL_SECONDS,
            notification_interval=settings.NOTIFICATION_POLL_INTERVAL_SECONDS,
            idle_timeout=settings.EDITING_IDLE_TIMEOUT_SECONDS,
            debounce=settings.REFRESH_DEBOUNCE_SECONDS,
            reconnect_delay=settings.RECONNECT_DELAY_SECONDS,
            on_board_change=_print_changes,
            on_notification=_print_notification,
        )
        print(f"Watching board at {api_url} (broadcast: {ws_url})")
        await session.start()
        try:
            await asyncio.Event().wait()
        finally:
            await session.stop()


def main() -> None:
    from src.dealflow.config import get_settings

    settings = get_settings()
    parser = argparse.ArgumentParser(description="Watch the deal board")
    parser.add_argument("--api-url", default=settings.API_BASE_URL, help="Server root URL")
    parser.add_argument("--ws-url", default=settings.WS_URL, help="Broadcast channel URL")
    parser.add_argument("--token", default=None, help="Bearer token for the acting user")
    parser.add_argument("--user-id", type=int, default=None, help="Register for targeted notifications")
    parser.add_argument("--pipeline-id", type=int, default=None, help="Restrict to one pipeline")
    args = parser.parse_args()

    try:
        asyncio.run(watch(args.api_url, args.ws_url, args.token, args.user_id, args.pipeline_id))
    except KeyboardInterrupt:
        print("Stopped.")


if __name__ == "__main__":
    main()
