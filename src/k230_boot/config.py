"""
K230 Boot Configuration
=======================

Timing, retry and chunking settings for a boot session. Configuration
can come from:
- Default values (defined here)
- Environment variables (BootConfig.from_env)
- Command-line options (the CLI overrides individual fields)

The defaults are conservative placeholders. The mask ROM's real limits
vary between ROM revisions, so every value can be tuned without code
changes.

Timeouts are per transfer. A multi-chunk stage has no overall deadline,
so one slow chunk never aborts an otherwise healthy stage.
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class BootConfig:
    """
    Configuration for a boot session.

    Attributes:
        handshake_timeout: Seconds to wait for each handshake response (default: 0.5)
        handshake_attempts: Handshake attempts before giving up (default: 3)
        command_timeout: Seconds per transfer for all other commands (default: 5.0)
        command_attempts: Attempts for READ-INFO and FLUSH-CACHES (default: 3)
        write_attempts: Attempts per WRITE-MEMORY chunk (default: 3)
        retry_backoff: Linear backoff step in seconds; attempt n waits n * step (default: 0.1)
        chunk_size: Payload bytes per WRITE-MEMORY frame (default: 4096)
        response_size: Bytes requested per bulk IN read (default: 512)
    """

    # ═══════════════════════════════════════════════════════════════════════════
    # TIMING
    # ═══════════════════════════════════════════════════════════════════════════

    handshake_timeout: float = 0.5
    command_timeout: float = 5.0
    retry_backoff: float = 0.1

    # ═══════════════════════════════════════════════════════════════════════════
    # RETRY BOUNDS
    # ═══════════════════════════════════════════════════════════════════════════

    handshake_attempts: int = 3
    command_attempts: int = 3
    write_attempts: int = 3

    # ═══════════════════════════════════════════════════════════════════════════
    # SIZES
    # ═══════════════════════════════════════════════════════════════════════════

    chunk_size: int = 4096
    response_size: int = 512

    # ═══════════════════════════════════════════════════════════════════════════
    # FACTORY METHODS
    # ═══════════════════════════════════════════════════════════════════════════

    @classmethod
    def from_env(cls) -> "BootConfig":
        """
        Create BootConfig from environment variables.

        Environment variables (all optional):
            K230_BOOT_HANDSHAKE_TIMEOUT: Handshake timeout in seconds
            K230_BOOT_HANDSHAKE_ATTEMPTS: Handshake attempt bound
            K230_BOOT_COMMAND_TIMEOUT: Per-transfer timeout in seconds
            K230_BOOT_COMMAND_ATTEMPTS: Command attempt bound
            K230_BOOT_WRITE_ATTEMPTS: Per-chunk write attempt bound
            K230_BOOT_RETRY_BACKOFF: Backoff step in seconds
            K230_BOOT_CHUNK_SIZE: Write chunk size in bytes
            K230_BOOT_RESPONSE_SIZE: Bulk IN read size in bytes

        Invalid values are logged and ignored.
        """
        config = cls()

        for field in fields(cls):
            name = f"K230_BOOT_{field.name.upper()}"
            if raw := os.environ.get(name):
                convert: Callable[[str], object] = int if field.type in (int, "int") else float
                try:
                    setattr(config, field.name, convert(raw))
                except ValueError:
                    logger.warning("Ignoring invalid %s=%r", name, raw)

        return config

    # ═══════════════════════════════════════════════════════════════════════════
    # VALIDATION
    # ═══════════════════════════════════════════════════════════════════════════

    def validate(self) -> None:
        """
        Check that every setting is usable.

        Raises:
            ValueError: If a timeout, attempt bound or size is not positive,
                        or the backoff is negative.
        """
        for name in ("handshake_timeout", "command_timeout", "handshake_attempts",
                     "command_attempts", "write_attempts", "chunk_size",
                     "response_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.retry_backoff < 0:
            raise ValueError(f"retry_backoff must not be negative, got {self.retry_backoff}")
