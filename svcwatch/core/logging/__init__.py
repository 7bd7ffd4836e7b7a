from svcwatch.core.logging.structured import (
    StructuredFormatter,
    StructuredLogger,
    get_logger,
    setup_structured_logging,
)

__all__ = [
    "StructuredFormatter",
    "StructuredLogger",
    "get_logger",
    "setup_structured_logging",
]
