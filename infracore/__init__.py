"""
infracore

A declarative infrastructure engine.
Parses resource configurations, plans changes against recorded state and
applies them through providers, with locked, versioned state per workspace.
"""

__version__ = "1.0.0"
__author__ = "infracore Team"
