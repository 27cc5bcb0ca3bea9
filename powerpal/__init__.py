"""PowerPal: per-user energy dashboard over a ThingSpeak telemetry feed."""

__version__ = "0.3.0"
