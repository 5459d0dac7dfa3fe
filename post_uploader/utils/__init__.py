"""Utilities for post_uploader."""
from .events import EventEmitter

__all__ = ["EventEmitter"]
