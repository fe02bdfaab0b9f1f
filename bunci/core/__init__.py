"""Core image lifecycle, caching and session logic."""
