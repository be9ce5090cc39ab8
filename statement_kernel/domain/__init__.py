"""Pure domain types for statement generation (zero I/O)."""
