"""Slot allocator for a shared workflow engine."""
__version__ = "0.1.0"
