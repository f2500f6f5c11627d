"""
Observability Package — Stage Tracing

Provides:
  TracingConfig — reports LangSmith activation at startup
  traced        — decorator that times pipeline stages per session and logs the outcome

Usage::

    from docqa.observability.tracing import TracingConfig, traced
    TracingConfig.init()
"""

from docqa.observability.tracing import TracingConfig, traced

__all__ = ["TracingConfig", "traced"]
