"""Local task tracker with a consume daemon for coding-agent CLIs."""

__version__ = "0.1.0"
