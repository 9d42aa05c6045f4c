"""CLI command implementations for lux_patcher.

- patch: Bring an installation up to date
- diff: Show pending operations without changing anything
"""
