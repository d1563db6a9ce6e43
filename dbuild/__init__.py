# dbuild/__init__.py
"""dbuild - source-based package builder driven by declarative recipes."""

__version__ = "1.0.0"
