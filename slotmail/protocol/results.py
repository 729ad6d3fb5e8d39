"""
slotmail Operation Results

Outbound operations report through CommResult instead of raising, so the
driver can tell a failure worth retrying from one that needs attention.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class CommResult:
    """Result of a contact operation."""
    success: bool
    fatal: bool = False
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "CommResult":
        return cls(success=True)

    @classmethod
    def retry(cls, error: str) -> "CommResult":
        """Transient failure; the next cycle tries again."""
        return cls(success=False, error=error)

    @classmethod
    def failed(cls, error: str) -> "CommResult":
        """Fatal failure; retrying cannot help until something changes."""
        return cls(success=False, fatal=True, error=error)
