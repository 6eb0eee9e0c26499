class FleetError(Exception):
    """Base class for all fleet-related errors."""
    def __init__(self, message, code=None, details=None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

class MissionError(FleetError):
    """Errors related to the mission delegation protocol."""
    pass

class TransportError(FleetError):
    """Errors related to the mission transport."""
    pass

class CapabilityError(FleetError):
    """Errors related to capability plugins."""
    pass

class ConfigError(FleetError):
    """Errors related to configuration."""
    pass

# More specific error classes
class InvalidMission(MissionError):
    """Mission rejected at origination, before any poll is sent."""
    pass

class NoRespondentError(MissionError):
    """No worker claimed the mission within the claim timeout."""
    pass

class MissionBuildError(MissionError):
    """The task-graph engine rejected the mission graph or its plugins."""
    pass

class StaleMessage(MissionError):
    """A message refers to a round the receiver no longer considers current.

    Never surfaced to callers: receivers drop it with a debug log.
    """
    pass

class BusConnectionError(TransportError):
    """Errors connecting to the mission bus."""
    pass

class MessageFormatError(TransportError):
    """A payload received from the bus is not a valid envelope."""
    pass

class PluginNotFoundError(CapabilityError):
    """Errors when a capability plugin is not found."""
    pass
