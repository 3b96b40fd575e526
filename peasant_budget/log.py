"""
Structured Logging

DESIGN DECISION: Every storage operation logs a structured event.
This provides:
1. Traceability of loads, saves and provider switches
2. Timing information for encryption and network calls
3. Debugging capability when sync status turns to error

Secrets (passphrases, tokens, derived keys, plaintext budget data)
are NEVER logged - only sizes, counts and flags.
"""

import structlog


structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger bound to a component name."""
    return structlog.get_logger(name)
