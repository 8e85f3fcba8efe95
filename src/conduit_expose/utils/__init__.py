"""Utils module - Shared utilities."""

from __future__ import annotations

from conduit_expose.utils.logging import get_logger, setup_logging
from conduit_expose.utils.numbers import round2, round_half_up

__all__ = ["setup_logging", "get_logger", "round2", "round_half_up"]
