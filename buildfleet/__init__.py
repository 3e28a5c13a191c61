"""Build fleet: node registry, job dispatch and remote build orchestration."""

__version__ = "0.1.0"
