"""Client-side auto-run loop: POST tick, wait, repeat until done.

Strictly sequential: the next tick is scheduled only after the previous
response has been handled, so requests never overlap. The loop ends on a
terminal run status, on the first error (never retried) or on ``stop()``,
and ``on_stopped`` fires exactly once in every case.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)

DEFAULT_DELAY_MS = 100

TERMINAL_RUN_STATUSES = ("COMPLETED", "FAILED", "CANCELLED")


@dataclass
class AutoRunError:
    code: str
    message: str


def is_terminal_tick(data: Any) -> bool:
    """Default terminal check over a tick response body."""
    if not isinstance(data, dict):
        return False
    return str(data.get("run_status", "")).upper() in TERMINAL_RUN_STATUSES


class AutoRunLoop:
    """One in-flight tick request at a time, with a cancellable timer between ticks."""

    def __init__(
        self,
        url: str,
        on_tick: Callable[[Any], None],
        is_terminal: Callable[[Any], bool] = is_terminal_tick,
        on_error: Optional[Callable[[AutoRunError], None]] = None,
        on_stopped: Optional[Callable[[], None]] = None,
        delay_ms: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.on_tick = on_tick
        self.is_terminal = is_terminal
        self.on_error = on_error
        self.on_stopped = on_stopped
        self.delay = (DEFAULT_DELAY_MS if delay_ms is None else delay_ms) / 1000.0

        self._client = client
        self._owns_client = client is None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._done: Optional[asyncio.Future] = None
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Schedule the first tick after the delay. Must run inside an event loop."""
        if self._loop is not None:
            raise RuntimeError("Auto-run loop already started")
        self._loop = asyncio.get_running_loop()
        self._done = self._loop.create_future()
        if self._client is None:
            self._client = httpx.AsyncClient()
        if self._stopped:
            self._finish()
            return
        self._timer = self._loop.call_later(self.delay, self._fire)

    def _fire(self):
        self._timer = None
        if self._stopped:
            return
        self._task = self._loop.create_task(self._tick())

    async def _tick(self):
        try:
            response = await self._client.post(self.url, json={})
        except httpx.HTTPError as e:
            if not self._stopped:
                self._fail(AutoRunError(code="NETWORK_ERROR", message=str(e) or type(e).__name__))
            return

        if self._stopped:
            return

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_error:
            api_error = data.get("error") if isinstance(data, dict) else None
            api_error = api_error if isinstance(api_error, dict) else {}
            self._fail(
                AutoRunError(
                    code=api_error.get("code") or "UNKNOWN",
                    message=api_error.get("message") or f"Tick failed (HTTP {response.status_code})",
                )
            )
            return

        try:
            self.on_tick(data)
            terminal = self.is_terminal(data)
        except Exception as e:
            self._fail(AutoRunError(code="CALLBACK_ERROR", message=str(e) or type(e).__name__))
            return

        if terminal:
            self.stop()
            return

        if not self._stopped:
            self._timer = self._loop.call_later(self.delay, self._fire)

    def _fail(self, error: AutoRunError):
        logger.warning(f"Auto-run stopped on error {error.code}")
        try:
            if self.on_error is not None:
                self.on_error(error)
        finally:
            self.stop()

    def stop(self):
        """Cancel the pending timer and any in-flight request. Safe to call repeatedly."""
        if self._stopped:
            return
        self._stopped = True

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        if self._loop is not None:
            self._finish()

    def _finish(self):
        if self.on_stopped is not None:
            self.on_stopped()
        if self._owns_client and self._client is not None:
            self._loop.create_task(self._client.aclose())
        if self._done is not None and not self._done.done():
            self._done.set_result(None)

    async def wait(self):
        """Wait until the loop has stopped for any reason."""
        if self._done is None:
            raise RuntimeError("Auto-run loop not started")
        await self._done


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a run to completion by ticking it.")
    parser.add_argument("run_id", help="Run id to tick")
    parser.add_argument("--base-url", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--delay-ms", type=int, default=DEFAULT_DELAY_MS, help="Delay between ticks")
    return parser.parse_args(argv)


async def _drive(args: argparse.Namespace) -> int:
    errors = []

    def on_tick(data):
        progress = data.get("progress", {})
        print(
            f"{data.get('run_status')}: processed={data.get('processed')} busy={data.get('busy')} "
            f"succeeded={progress.get('succeeded', 0)} failed={progress.get('failed', 0)} "
            f"queued={progress.get('queued', 0)}"
        )

    loop = AutoRunLoop(
        url=f"{args.base_url.rstrip('/')}/distill/runs/{args.run_id}/tick",
        on_tick=on_tick,
        on_error=errors.append,
        delay_ms=args.delay_ms,
    )
    loop.start()
    try:
        await loop.wait()
    except asyncio.CancelledError:
        loop.stop()
        raise

    for error in errors:
        print(f"error {error.code}: {error.message}", file=sys.stderr)
    return 1 if errors else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return asyncio.run(_drive(_parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
