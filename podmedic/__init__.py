"""podmedic: watches Kubernetes events and deletes pods stuck on known transient failures."""

__version__ = "0.1.0"
