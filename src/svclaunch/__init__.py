"""svclaunch - start and supervise the services of a local workspace."""

__version__ = "0.1.0"
