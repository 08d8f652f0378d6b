"""
Write gating for calculator flash operations.

Every operation that programs flash or RAM goes through
require_write_permission() so the rules live in one place.
"""

import sys
from dataclasses import dataclass, field
from typing import Callable, List, Optional

# Confirmation token required for non-interactive writes
CONFIRMATION_TOKEN = "WRITE"


class WritePermissionError(Exception):
    """
    Raised when a write operation is not permitted.

    Attributes:
        reason: Human-readable explanation of why the write was denied
        details: Context shown to the user (model, target, size)
    """

    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


@dataclass
class SafetyContext:
    """
    Everything needed to decide whether a write may proceed.

    Attributes:
        write_enabled: The --write flag was given
        confirmation_token: Token for non-interactive confirmation
        interactive: Whether the user can be prompted
        model: Identified model label ("????" when unknown)
        dry_run: Nothing will actually be written
        warnings: Messages accumulated while preparing the write
        prompt_confirmation: Prompt callback returning the user's answer
        show_details: Callback displaying the write details before prompting
    """
    write_enabled: bool = False
    confirmation_token: Optional[str] = None
    interactive: bool = True
    model: str = ""
    dry_run: bool = False
    warnings: List[str] = field(default_factory=list)
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    @property
    def is_model_unknown(self) -> bool:
        return not self.model or self.model in ("????", "unknown", "Unknown")

    def to_details_dict(self, target: str = "", bytes_length: int = 0) -> dict:
        details = {
            "model": self.model or "Unknown",
            "target": target,
            "bytes_length": bytes_length,
        }
        if self.warnings:
            details["warnings"] = list(self.warnings)
        return details


def require_write_permission(
    ctx: SafetyContext,
    target: str = "",
    bytes_length: int = 0,
) -> None:
    """
    Enforce write permission rules.

    Rules, in order:
    1. Dry runs are always allowed
    2. The write must be explicitly enabled
    3. Unknown models are never written to
    4. A confirmation token, when present, must match exactly
    5. Otherwise the user must confirm interactively

    Raises:
        WritePermissionError: If the write is not permitted
    """
    details = ctx.to_details_dict(target, bytes_length)

    if ctx.dry_run:
        return

    if not ctx.write_enabled:
        raise WritePermissionError(
            "Write operation requires explicit permission (--write).",
            details=details,
        )

    if ctx.is_model_unknown:
        raise WritePermissionError(
            "Cannot write to an unsupported or unidentified device.",
            details=details,
        )

    if ctx.confirmation_token is not None:
        if ctx.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        return

    if not ctx.interactive:
        raise WritePermissionError(
            "Non-interactive mode requires a confirmation token.",
            details=details,
        )

    if ctx.prompt_confirmation is None:
        raise WritePermissionError(
            "Interactive confirmation required but no prompt handler set.",
            details=details,
        )

    if ctx.show_details:
        ctx.show_details(details)
    answer = ctx.prompt_confirmation(
        f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
    )
    if answer.strip().upper() != CONFIRMATION_TOKEN:
        raise WritePermissionError("Confirmation failed. Write aborted by user.", details=details)


def create_cli_safety_context(
    write_flag: bool,
    model: str = "",
    dry_run: bool = False,
    confirmation_token: Optional[str] = None,
) -> SafetyContext:
    """Build a context for the CLI; prompts are possible only on a TTY without a token."""
    return SafetyContext(
        write_enabled=write_flag,
        confirmation_token=confirmation_token,
        interactive=sys.stdin.isatty() and confirmation_token is None,
        model=model,
        dry_run=dry_run,
    )
