"""
Run control: stop flag and pause gate.
"""

import asyncio


class RunControl:
    """
    Cooperative stop/pause signals checked between batches.

    The pause gate is an ``asyncio.Event`` that is set while the run may
    proceed; ``wait_if_paused`` blocks on it without polling. Requesting a
    stop opens the gate so a paused run can notice the stop and exit.
    """

    def __init__(self) -> None:
        self._gate = asyncio.Event()
        self._gate.set()
        self._stop_requested = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def pause_requested(self) -> bool:
        return not self._gate.is_set()

    def request_stop(self) -> None:
        self._stop_requested = True
        self._gate.set()

    def request_pause(self) -> None:
        if not self._stop_requested:
            self._gate.clear()

    def release(self) -> None:
        self._gate.set()

    async def wait_if_paused(self) -> None:
        await self._gate.wait()
