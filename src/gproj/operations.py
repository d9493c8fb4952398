"""Polling of long-running Google Cloud operations.

Project creation and service enablement return an operation handle instead
of a result. The handle is polled at a fixed interval until it reports an
error, reports done, or the deadline passes. The interval is much shorter
than the expected operation latency (seconds) so completion is noticed
quickly without flooding the operations endpoint.

Cancellation: waiting happens in ``asyncio.sleep`` and in executor-backed
fetches, both of which are interrupted by task cancellation, so an external
abort stops polling within one interval.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace

from .config import DEFAULT_POLL_INTERVAL_MS
from .errors import OperationStatusError, OperationTimeoutError, RemoteOperationError
from .models import PendingOperation

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = DEFAULT_POLL_INTERVAL_MS / 1000

# Blocking call returning the current snapshot of a named operation
OperationFetcher = Callable[[str], PendingOperation]


def _raise_if_failed(operation: PendingOperation) -> None:
    if operation.failed:
        raise RemoteOperationError(
            operation.name, operation.error_code, operation.error_message
        )


async def wait_until_done(
    initial: PendingOperation,
    fetch: OperationFetcher,
    *,
    deadline: float | None = None,
    interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> PendingOperation:
    """Block until a long-running operation completes.

    Args:
        initial: Handle returned by the mutating call.
        fetch: Blocking function fetching the operation by name.
        deadline: Seconds to wait before giving up. None waits until the
            caller cancels.
        interval: Seconds between polls.

    Returns:
        The final, successful operation snapshot.

    Raises:
        RemoteOperationError: The operation finished with an error.
        OperationTimeoutError: The deadline passed first.
        OperationStatusError: A poll request itself failed.
    """
    # Terminal handles are returned without a single poll
    _raise_if_failed(initial)
    if initial.done:
        return initial

    loop = asyncio.get_running_loop()
    operation = initial

    try:
        async with asyncio.timeout(deadline):
            while True:
                await asyncio.sleep(interval)

                try:
                    snapshot = await loop.run_in_executor(None, fetch, initial.name)
                except Exception as e:
                    raise OperationStatusError(
                        f"error getting operation info for {initial.name}: {e}"
                    ) from e

                operation = replace(
                    snapshot, name=snapshot.name or initial.name, polls=operation.polls + 1
                )
                logger.debug(
                    "Polled operation",
                    extra={
                        "operation": operation.name,
                        "state": operation.state.value,
                        "polls": operation.polls,
                    },
                )

                _raise_if_failed(operation)
                if operation.done:
                    return operation
    except TimeoutError as e:
        # Only the deadline lands here: fetch failures are wrapped above
        raise OperationTimeoutError(initial.name, deadline or 0.0) from e
