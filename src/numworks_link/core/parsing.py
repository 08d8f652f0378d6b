"""
Parsing helpers for user-supplied values.

The CLI wraps these and converts ValueError into typer.BadParameter.
"""

import importlib
from enum import Enum
from typing import Any, Optional


class FlashTarget(Enum):
    """Where a firmware image goes."""
    INTERNAL = "internal"
    EXTERNAL = "external"
    RECOVERY = "recovery"


def parse_int(value: Optional[str]) -> Optional[int]:
    """
    Parse an integer written in decimal, 0x-prefixed hex or h-suffixed hex.

    Returns:
        Parsed integer, or None for None/blank input

    Raises:
        ValueError: If the value cannot be parsed
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            return int(value, 16)
        if value.lower().endswith("h"):
            return int(value[:-1], 16)
        return int(value)
    except ValueError:
        raise ValueError(
            f"Invalid number '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )


def parse_flash_target(value: str) -> FlashTarget:
    """
    Parse a flash target name ("internal", "external", "recovery").

    Raises:
        ValueError: If the name is not a known target
    """
    normalized = (value or "").strip().lower()
    for target in FlashTarget:
        if target.value == normalized:
            return target
    valid = ", ".join(t.value for t in FlashTarget)
    raise ValueError(f"Invalid flash target '{value}'. Valid targets: {valid}")


def load_object(reference: str) -> Any:
    """
    Import an object from a 'package.module:attribute' reference.

    Raises:
        ValueError: If the reference is malformed or cannot be resolved
    """
    module_name, sep, attribute = (reference or "").strip().partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Invalid reference '{reference}'. Use 'package.module:attribute'.")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"Cannot import module '{module_name}': {e}")

    target = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError:
            raise ValueError(f"Module '{module_name}' has no attribute '{attribute}'")
    return target
