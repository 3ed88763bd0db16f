"""Deploy self-hosted apps to cloud servers from declarative installer specs."""

__version__ = "0.1.0"
