"""hwmgr - hardware node pool manager."""

__version__ = "0.1.0"
