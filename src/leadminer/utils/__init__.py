"""Utility modules for LeadMiner."""

from .atomic import atomic_json_dump, atomic_write_text

__all__ = ["atomic_json_dump", "atomic_write_text"]
