"""
Result objects for core operations.

Provides a unified result structure that the CLI (and any other caller)
can use to display operation outcomes consistently.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .messages import WarningItem


@dataclass
class OperationResult:
    """
    Unified result object for all core operations.

    Attributes:
        ok: Whether the operation completed successfully
        operation: Name of the operation (e.g., "flash", "read")
        part: Target part name
        outcome: Final session outcome name (SUCCESS, ABORTED, STALLED)
        bytes_len: Number of bytes flashed or read
        elapsed_ms: Time from FLASH_INIT to completion
        warnings: Non-blocking issues encountered
        errors: Blocking errors that caused failure
        items: Structured warnings recorded by the session
        metadata: Additional operation-specific data
        logs: Captured log lines from the operation
    """
    ok: bool
    operation: str
    part: str = ""
    outcome: str = ""
    bytes_len: int = 0
    elapsed_ms: int = 0
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    items: List[WarningItem] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Add an error message and mark result as failed."""
        self.errors.append(message)
        self.ok = False

    @classmethod
    def failure(cls, operation: str, error: str, part: str = "", **kwargs) -> "OperationResult":
        """Create a failed result."""
        result = cls(ok=False, operation=operation, part=part, **kwargs)
        result.errors.append(error)
        return result
