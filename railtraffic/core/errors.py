"""
Exception types raised by the engine services.
"""


class RailTrafficError(Exception):
    """Base class for engine errors."""


class NotFoundError(RailTrafficError, LookupError):
    """Requested train, route, station or schedule is not known."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class ScenarioTimeoutError(RailTrafficError, TimeoutError):
    """Time-boxed scenario analysis did not finish in time."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Scenario analysis exceeded {timeout_seconds:.1f}s")
