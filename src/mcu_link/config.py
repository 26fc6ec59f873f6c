"""
MCU Link Configuration
======================

Connection and timing configuration. Values can come from:
- Default values (defined here)
- Environment variables (LinkConfig.from_env)
- Command-line options (applied by the CLI on top of the above)

All timing values are in seconds.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class LinkConfig:
    """
    Configuration for a device connection.

    Attributes:
        port: Serial device path (None = auto-detect)
        baud_rate: Baud rate used when opening the port (default: 115200)
        timeout: Default bootloader response timeout (default: 1.0)
        sync_timeout: Timeout for the initial sync probe (default: 0.1)
        settle_delay: Wait after a reconnect before the REPL queue restarts
        banner_timeout: Wait for the raw REPL banner (default: 2.0)
        exec_timeout: Default timeout for one raw REPL command batch
        error_on_skip: Reject malformed frames instead of dropping them
    """

    port: Optional[str] = None
    baud_rate: int = 115200

    # Bootloader timing
    timeout: float = 1.0
    sync_timeout: float = 0.1

    # REPL timing
    settle_delay: float = 2.0
    banner_timeout: float = 2.0
    exec_timeout: float = 5.0

    # Framing policy
    error_on_skip: bool = True

    @classmethod
    def from_env(cls) -> "LinkConfig":
        """
        Create LinkConfig from environment variables.

        Environment variables (all optional):
            MCULINK_PORT: Serial device path
            MCULINK_BAUD: Baud rate (integer)
            MCULINK_TIMEOUT: Bootloader response timeout
            MCULINK_SYNC_TIMEOUT: Sync probe timeout
            MCULINK_SETTLE_DELAY: Delay before restarting the REPL queue
            MCULINK_BANNER_TIMEOUT: Raw REPL banner timeout
            MCULINK_EXEC_TIMEOUT: Raw REPL command timeout
            MCULINK_STRICT_FRAMING: "0"/"false" to drop bad framing bytes

        Invalid values are ignored with a warning.

        Returns:
            LinkConfig with values from environment variables
        """
        config = cls()

        if port := os.environ.get("MCULINK_PORT"):
            config.port = port

        if baud := os.environ.get("MCULINK_BAUD"):
            try:
                config.baud_rate = int(baud)
            except ValueError:
                logger.warning("Ignoring invalid MCULINK_BAUD: %r", baud)

        for name, attr in (
            ("MCULINK_TIMEOUT", "timeout"),
            ("MCULINK_SYNC_TIMEOUT", "sync_timeout"),
            ("MCULINK_SETTLE_DELAY", "settle_delay"),
            ("MCULINK_BANNER_TIMEOUT", "banner_timeout"),
            ("MCULINK_EXEC_TIMEOUT", "exec_timeout"),
        ):
            if value := os.environ.get(name):
                try:
                    setattr(config, attr, float(value))
                except ValueError:
                    logger.warning("Ignoring invalid %s: %r", name, value)

        if strict := os.environ.get("MCULINK_STRICT_FRAMING"):
            config.error_on_skip = strict.strip().lower() not in ("0", "false", "no", "off")

        return config
