"""Treatment-scheduling core: next steps, slot intents, bookings and forecasts."""

__version__ = "0.1.0"
