"""Relay — streaming bridge between a Messages-style API and an interactive CLI tool."""

__version__ = "0.1.0"
