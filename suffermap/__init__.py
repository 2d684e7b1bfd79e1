"""SufferMap: wind and climb difficulty scoring for cycling routes."""

__version__ = "0.1.0"
