"""Operator commands consumed by the orchestrator through a single queue."""

import asyncio
from dataclasses import dataclass
from enum import Enum


class CommandKind(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    ABORT = "abort"
    SKIP_ROUND = "skip_round"
    INJECT_FEEDBACK = "inject_feedback"


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    text: str = ""


PAUSE = Command(CommandKind.PAUSE)
RESUME = Command(CommandKind.RESUME)
ABORT = Command(CommandKind.ABORT)
SKIP_ROUND = Command(CommandKind.SKIP_ROUND)


def inject_feedback(text: str) -> Command:
    return Command(CommandKind.INJECT_FEEDBACK, text)


class CommandQueue:
    """FIFO of commands. Any task may send; only the orchestrator receives."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Command] = asyncio.Queue()

    def send(self, command: Command) -> None:
        self._queue.put_nowait(command)

    def send_threadsafe(self, command: Command, loop: asyncio.AbstractEventLoop) -> None:
        loop.call_soon_threadsafe(self._queue.put_nowait, command)

    def drain(self) -> list[Command]:
        commands: list[Command] = []
        while not self._queue.empty():
            commands.append(self._queue.get_nowait())
        return commands

    async def receive(self) -> Command:
        return await self._queue.get()
