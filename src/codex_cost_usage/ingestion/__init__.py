"""Scan pipeline for Codex session logs."""
