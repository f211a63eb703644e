"""Remote control for local coding-assistant CLIs over chat channels."""

__version__ = "0.1.0"
