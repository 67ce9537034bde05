"""Orchestration-level exceptions. Provider failures live in forge.providers.base."""


class ForgeError(Exception):
    """Base class for errors raised by the round engine."""

    recoverable = False


class RoundTimeout(ForgeError):
    """A whole round exceeded its allotted time."""

    recoverable = True

    def __init__(self, kind: str, timeout_sec: float) -> None:
        self.kind = kind
        self.timeout_sec = timeout_sec
        super().__init__(f"{kind} round timed out after {timeout_sec:.0f}s")


class ParseFailure(ForgeError):
    """A response could not be turned into structured data, even leniently."""

    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(f"[{source}] {message}")


class OrchestrationInvariant(ForgeError):
    """A round was requested without its prerequisite content. Indicates a bug."""


class RoundFailure(ForgeError):
    """A round could not produce enough usable contributions."""

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        super().__init__(f"{kind} round failed: {message}")
