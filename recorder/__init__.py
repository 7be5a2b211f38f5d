"""Continuous personal activity recorder.

Captures screenshots, microphone audio, active-window focus and browser
history into a local SQLite store and consolidates them into a timeline.
"""

__version__ = "0.1.0"
