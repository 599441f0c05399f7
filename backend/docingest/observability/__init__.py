"""
Observability Package — Logging + Span Timing

Provides:
  configure_logging — root logger setup from settings
  traced            — decorator for instrumenting async functions

Usage::

    from docingest.observability import configure_logging, traced
    configure_logging()
"""

from docingest.observability.tracing import apply_log_format, configure_logging, traced

__all__ = ["apply_log_format", "configure_logging", "traced"]
