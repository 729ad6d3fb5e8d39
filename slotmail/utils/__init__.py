"""slotmail Utilities Module."""

from .encoding import b32encode, b32decode
from .formatting import format_timestamp, format_duration

__all__ = ["b32encode", "b32decode", "format_timestamp", "format_duration"]
