"""
Statement Kernel

Domain types, persistence adapters and ambient infrastructure for the
statement generation engine:
- Structured logging with request-scoped context
- Typed exception hierarchy with machine-readable codes
- Frozen domain records for templates, events and statements
- Read-only selectors over the planning/execution data sources
"""

__version__ = "0.1.0"
