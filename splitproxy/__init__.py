"""Storage, telemetry and deferred recording for a feature-flag proxy."""

__version__ = "0.1.0"