"""codeloop: a terminal coding assistant built around a tool-calling loop."""

__version__ = "0.1.0"
