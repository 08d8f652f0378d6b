"""
Result objects for front-end workflows.

Workflows in core.actions return an OperationResult instead of raising for
device-level failures, so the CLI can print a uniform summary.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class OperationResult:
    """
    Outcome of one workflow.

    Attributes:
        ok: Whether the operation completed successfully
        operation: Workflow name (e.g. "read_info", "flash")
        model: Model label of the connected calculator, if identified
        device: Device identity string
        target: Memory target description (e.g. "internal @ 0x08000000")
        bytes_len: Number of bytes transferred
        hashes: Digest values of transferred data
        warnings: Non-blocking issues
        errors: Blocking errors
        metadata: Operation-specific payload (platform info, raw images...)
        logs: Log lines captured while the operation ran
    """
    ok: bool
    operation: str
    model: str = ""
    device: str = ""
    target: str = ""
    bytes_len: int = 0
    hashes: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Record an error; the result becomes a failure."""
        self.errors.append(message)
        self.ok = False

    def to_summary(self) -> str:
        status = "SUCCESS" if self.ok else "FAILED"
        lines = [f"[{status}] {self.operation}"]

        if self.device:
            lines.append(f"  Device: {self.device}")
        if self.model:
            lines.append(f"  Model: {self.model}")
        if self.target:
            lines.append(f"  Target: {self.target}")
        if self.bytes_len:
            lines.append(f"  Bytes: {self.bytes_len:,}")
        for name, value in self.hashes.items():
            lines.append(f"  {name}: {value[:16]}...")

        if self.warnings:
            lines.append("  Warnings:")
            lines.extend(f"    - {warning}" for warning in self.warnings)
        if self.errors:
            lines.append("  Errors:")
            lines.extend(f"    - {error}" for error in self.errors)

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view; raw byte payloads in metadata are omitted."""
        return {
            "ok": self.ok,
            "operation": self.operation,
            "model": self.model,
            "device": self.device,
            "target": self.target,
            "bytes_len": self.bytes_len,
            "hashes": self.hashes,
            "warnings": self.warnings,
            "errors": self.errors,
            "metadata": {
                key: value for key, value in self.metadata.items()
                if not isinstance(value, (bytes, bytearray))
            },
            "logs": self.logs,
        }

    @classmethod
    def success(cls, operation: str, **kwargs) -> "OperationResult":
        return cls(ok=True, operation=operation, **kwargs)

    @classmethod
    def failure(cls, operation: str, error: str, **kwargs) -> "OperationResult":
        result = cls(ok=False, operation=operation, **kwargs)
        result.errors.append(error)
        return result
