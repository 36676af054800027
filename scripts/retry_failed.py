#!/usr/bin/env python3
"""
Secretary failed-recording retrier

Resets every recording of a user that is stuck in a failure state with its
retry budget used up, exactly like the manual retry button: the recording
re-enters the stage that failed with a fresh retry count, and the queue
picks it up on its next tick. Safe to run repeatedly.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Ensure project root is on sys.path for ``secretary`` imports
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from secretary.core.config import get_settings  # noqa: E402
from secretary.core.logging import configure_logging  # noqa: E402
from secretary.services.processing.state_machine import FAILURE_STATES  # noqa: E402
from secretary.services.remote.backend import RemoteBackend  # noqa: E402
from secretary.services.storage.database import (  # noqa: E402
    close_db,
    ensure_sqlite_dir,
    get_engine,
    get_session_factory,
    init_db,
)


async def retry_failed(
    backend: RemoteBackend,
    user_id: str,
    max_retry: int,
    include_pending: bool = False,
) -> tuple[int, int]:
    """Reset the user's exhausted failures.

    Args:
        backend: Remote backend to act through.
        user_id: Owner of the recordings.
        max_retry: Retry budget; failures at or above it are "exhausted".
        include_pending: Also reset failures that still have automatic
            retries left.

    Returns:
        ``(reset, rejected)`` counts.
    """
    reset = 0
    rejected = 0
    for recording in await backend.list_recordings(user_id):
        if recording.processing_state not in FAILURE_STATES:
            continue
        if recording.retry_count < max_retry and not include_pending:
            continue
        if await backend.reset_processing_state(user_id, recording.id):
            print(f"  RESET {recording.id} ({recording.processing_state}, {recording.retry_count} attempts)")
            reset += 1
        else:
            print(f"  SKIP  {recording.id} (reset rejected)")
            rejected += 1
    return reset, rejected


async def run(user_id: str, include_pending: bool) -> int:
    settings = get_settings()
    ensure_sqlite_dir(settings.database_url)
    engine = get_engine(settings.database_url)
    await init_db(engine)
    backend = RemoteBackend(get_session_factory(engine))
    try:
        reset, rejected = await retry_failed(
            backend, user_id, settings.max_retry_count, include_pending
        )
    finally:
        await close_db()
    print(f"\nDone: {reset} reset, {rejected} rejected.")
    return 0


def main() -> int:
    """Entry point with CLI argument parsing."""
    parser = argparse.ArgumentParser(description="Retry permanently failed Secretary recordings")
    parser.add_argument("--user", help="User id (defaults to USER_ID from settings)")
    parser.add_argument(
        "--all",
        action="store_true",
        help="Also reset failures that still have automatic retries left",
    )
    args = parser.parse_args()

    user_id = args.user or get_settings().user_id
    if not user_id:
        print("No user id given (use --user or set USER_ID).")
        return 1
    configure_logging("WARNING")
    print("Secretary failed-recording retrier")
    print(f"User: {user_id}\n")
    return asyncio.run(run(user_id, args.all))


if __name__ == "__main__":
    sys.exit(main())
