"""
Structured logging package for the queue realtime core.

All imports should use explicit paths like
'from queue_realtime.structured_logging.enhanced_logging_config import get_logger'.

Named 'structured_logging' rather than 'logging' to avoid shadowing the
standard library module.
"""

__all__: list[str] = []
