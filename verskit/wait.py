"""Readiness polling.

``wait_for_ready`` is the generic fixed-interval loop; ``wait_for_running``
applies it to the Vers VM-state query.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from loguru import logger

from verskit.exceptions import BootTimeout
from verskit.model import RUNNING, VM

if TYPE_CHECKING:
    from verskit.client import VersClient


class TerminalStateError(RuntimeError):
    """Resource reached a state it will never leave."""


class PollTimeout(TimeoutError):
    """Deadline elapsed before the resource became ready."""

    def __init__(self, description: str, timeout: float, last: object) -> None:
        self.last = last
        super().__init__(f"Timeout waiting for {description} after {timeout:g}s")


async def wait_for_ready[T](
    poll_fn: Callable[[], Awaitable[T | None]],
    ready_check: Callable[[T], bool],
    *,
    terminal_check: Callable[[T], bool] | None = None,
    timeout: float = 300.0,
    interval: float = 5.0,
    description: str = "resource",
) -> T:
    """Wait until poll_fn returns something that passes ready_check.

    Args:
        poll_fn: Async function that polls for the resource state.
        ready_check: Function that returns True when resource is ready.
        terminal_check: Optional function that returns True if resource reached
            a terminal failure state (e.g., deleted).
        timeout: Maximum time to wait in seconds.
        interval: Time between polls in seconds.
        description: Description for error messages.

    Returns:
        The ready resource.

    Raises:
        PollTimeout: If timeout is exceeded.
        TerminalStateError: If resource reaches terminal state.
    """
    loop = asyncio.get_running_loop()
    start = loop.time()
    last: T | None = None

    while True:
        result = await poll_fn()

        if result is not None:
            last = result
            if ready_check(result):
                return result

            if terminal_check is not None and terminal_check(result):
                raise TerminalStateError(f"{description} reached terminal state: {result}")

        if loop.time() - start >= timeout:
            raise PollTimeout(description, timeout, last)

        await asyncio.sleep(interval)


async def wait_for_running(
    client: VersClient,
    vm_id: str,
    *,
    timeout: float = 180.0,
    interval: float = 2.0,
) -> VM:
    """Poll the VM list until ``vm_id`` reports "running".

    A VM missing from the list is treated as not booted yet. API errors
    propagate unchanged.

    Raises:
        BootTimeout: The VM was not running when the deadline elapsed, or it
            was deleted while we waited.
    """
    log = logger.bind(component="wait", vm_id=vm_id)
    log.debug("Waiting for VM to reach running state")
    try:
        vm = await wait_for_ready(
            lambda: client.get_vm(vm_id),
            lambda v: v.state == RUNNING,
            terminal_check=lambda v: v.state == "deleted",
            timeout=timeout,
            interval=interval,
            description=f"VM {vm_id}",
        )
    except PollTimeout as e:
        state = e.last.state if isinstance(e.last, VM) else "not listed"
        raise BootTimeout(
            "wait_for_running",
            vm_id,
            f"did not reach running state within {timeout:g}s (last state: {state})",
        ) from e
    except TerminalStateError as e:
        raise BootTimeout("wait_for_running", vm_id, str(e)) from e

    log.debug("VM is running")
    return vm
