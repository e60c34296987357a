"""Backend for a Nest thermostat dashboard."""

__version__ = "0.1.0"
