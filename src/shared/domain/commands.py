"""Base command and event interfaces for the lifecycle engine.

Commands are requests issued by an actor (clerk, technologist, pathologist)
and are handled exactly once. Events record what happened to an order,
specimen or result and may fan out to any number of handlers.
"""

from dataclasses import dataclass


@dataclass
class Command:
    """Base class for all commands."""
    pass

@dataclass
class Event:
    """Base class for all domain events."""

    @property
    def event_type(self) -> str:
        """Name consumers of the published stream switch on."""
        return type(self).__name__
