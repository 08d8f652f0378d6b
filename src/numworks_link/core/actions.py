"""
Core workflows for front ends.

Each workflow runs against a connected CalculatorLink and returns an
OperationResult. Device-level failures become failed results; refused
write permissions raise WritePermissionError.
"""

import hashlib
import logging
from contextlib import contextmanager
from typing import List

from numworks_link.core.link import CalculatorLink
from numworks_link.core.parsing import FlashTarget
from numworks_link.core.results import OperationResult
from numworks_link.core.safety import SafetyContext, require_write_permission
from numworks_link.errors import NumworksLinkError
from numworks_link.models.registry import require_known_model

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records: List[str] = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "numworks_link"):
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _device_label(link: CalculatorLink) -> str:
    session = link.session
    return str(session.identity) if session is not None else ""


def _identify_known(link: CalculatorLink) -> str:
    """Model label of the connected calculator, modded layouts included; UnknownModel if unsupported."""
    session = link.session
    tag = link.identify(exclude_modded=False)
    return require_known_model(tag, session.memory_map if session is not None else None).value


def read_info(link: CalculatorLink, exclude_modded: bool = False) -> OperationResult:
    """
    Identify the calculator and, where the mode allows it, read platform info.

    Returns:
        OperationResult with:
            - model: model label
            - metadata["model_description"]: human readable model
            - metadata["platform_info"]: decoded platform info dict (normal mode)
    """
    with _capture_logs() as logs:
        try:
            tag = link.identify(exclude_modded=exclude_modded)
            result = OperationResult.success(
                operation="read_info",
                model=tag.value,
                device=_device_label(link),
            )
            result.metadata["model_description"] = tag.description

            session = link.session
            if session is not None and session.memory_map is not None:
                result.metadata["memory_map"] = [
                    {
                        "start": f"0x{region.start:08X}",
                        "end": f"0x{region.end:08X}",
                        "sector_size": region.sector_size,
                    }
                    for region in session.memory_map
                ]

            if not tag.is_known:
                result.add_warning("Model could not be identified; not a supported device")
            elif link.profile.name == "normal":
                result.metadata["platform_info"] = link.read_metadata().to_dict()
        except NumworksLinkError as e:
            logger.error(f"read_info failed: {e}")
            result = OperationResult.failure("read_info", str(e), device=_device_label(link))

        result.logs = logs
        return result


def backup_storage_image(link: CalculatorLink) -> OperationResult:
    """
    Read the raw storage area.

    Returns:
        OperationResult with metadata["storage_image"] holding the bytes
    """
    with _capture_logs() as logs:
        try:
            metadata = link.read_metadata()
            image = link.read_storage_image(metadata)
            region = metadata.storage
            result = OperationResult.success(
                operation="backup_storage",
                device=_device_label(link),
                target=f"storage @ 0x{region.address:08X} ({region.size} bytes)",
                bytes_len=len(image),
            )
            result.hashes["sha256"] = hashlib.sha256(image).hexdigest()
            result.metadata["storage_image"] = image
            if image == b"\xFF" * len(image):
                result.add_warning("Storage area is blank (all 0xFF)")
        except NumworksLinkError as e:
            logger.error(f"backup_storage failed: {e}")
            result = OperationResult.failure("backup_storage", str(e), device=_device_label(link))

        result.logs = logs
        return result


def restore_storage_image(
    link: CalculatorLink,
    image: bytes,
    safety_ctx: SafetyContext,
) -> OperationResult:
    """
    Write a raw storage image back to the calculator.

    Raises:
        WritePermissionError: If the safety gate refuses the write
    """
    with _capture_logs() as logs:
        try:
            safety_ctx.model = _identify_known(link)
            metadata = link.read_metadata()
            region = metadata.storage
            target = f"storage @ 0x{region.address:08X} ({region.size} bytes)"

            require_write_permission(safety_ctx, target=target, bytes_length=len(image))
            if safety_ctx.dry_run:
                result = OperationResult.success("restore_storage", target=target, bytes_len=len(image))
                result.add_warning("Dry run: nothing was written")
            else:
                link.write_storage_image(image, metadata)
                result = OperationResult.success(
                    operation="restore_storage",
                    model=safety_ctx.model,
                    device=_device_label(link),
                    target=target,
                    bytes_len=len(image),
                )
            result.hashes["sha256"] = hashlib.sha256(image).hexdigest()
        except NumworksLinkError as e:
            logger.error(f"restore_storage failed: {e}")
            result = OperationResult.failure("restore_storage", str(e), device=_device_label(link))

        result.logs = logs
        return result


def flash_image(
    link: CalculatorLink,
    image: bytes,
    target: FlashTarget,
    safety_ctx: SafetyContext,
) -> OperationResult:
    """
    Flash a firmware image to internal flash, external flash, or recovery RAM.

    Raises:
        WritePermissionError: If the safety gate refuses the write
    """
    writers = {
        FlashTarget.INTERNAL: link.write_internal_image,
        FlashTarget.EXTERNAL: link.write_external_image,
        FlashTarget.RECOVERY: link.write_recovery_image,
    }

    with _capture_logs() as logs:
        try:
            safety_ctx.model = _identify_known(link)
            require_write_permission(safety_ctx, target=target.value, bytes_length=len(image))
            if safety_ctx.dry_run:
                result = OperationResult.success("flash", target=target.value, bytes_len=len(image))
                result.add_warning("Dry run: nothing was written")
            else:
                writers[target](image)
                result = OperationResult.success(
                    operation="flash",
                    model=safety_ctx.model,
                    device=_device_label(link),
                    target=target.value,
                    bytes_len=len(image),
                )
            result.hashes["sha256"] = hashlib.sha256(image).hexdigest()
        except NumworksLinkError as e:
            logger.error(f"flash failed: {e}")
            result = OperationResult.failure("flash", str(e), device=_device_label(link))

        result.logs = logs
        return result
