"""Incremental Codex session cost usage scanning."""
