"""Test doubles shared across the suite."""
import asyncio
import json


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeTransport:
    """Stands in for a FastAPI WebSocket. ``stalled`` never finishes a send."""

    def __init__(self, stalled: bool = False):
        self.stalled = stalled
        self.frames = []
        self.closed = None
        self._never = asyncio.Event()

    async def send_text(self, data: str):
        if self.stalled:
            await self._never.wait()
        self.frames.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed = (code, reason)

    def of_type(self, msg_type: str):
        return [frame["data"] for frame in self.frames if frame["type"] == msg_type]

    def types(self):
        return [frame["type"] for frame in self.frames]


async def settle(rounds: int = 50):
    """Let writer and background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
