"""
Application layer: the controller exposed to UI/CLI callers and the
command-line / Lambda entry point.
"""

from .controller import AppController

__all__ = ["AppController"]
