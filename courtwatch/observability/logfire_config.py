"""
Simple Logfire configuration.
Sends scheduler and booking spans to Logfire when a token is configured.
"""

import logfire

from courtwatch.config import get_settings

_initialized = False


def initialize_logfire():
    """
    Initialize Logfire once.

    Without LOGFIRE_TOKEN the spans opened by the services are no-ops.
    """
    global _initialized
    if _initialized:
        return

    settings = get_settings()
    if not settings.logfire_token:
        return  # Skip if no token configured

    logfire.configure(
        token=settings.logfire_token,
        service_name="courtwatch",
    )

    _initialized = True
