"""mkvauto - automated optical disc ripping and encoding."""

__version__ = "0.1.0"
