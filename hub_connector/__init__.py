"""Hub Connector: visitor telemetry capture and Hub synchronization service."""

__version__ = "2.5.1"
