"""
Configuration for analysis and growth runs.
"""

from .config import Settings, configure_logging, settings

__all__ = ['Settings', 'configure_logging', 'settings']
