"""
OpenAsphalte module lifecycle manager.
"""

__version__ = "0.0.2"
