"""Internal helpers shared by codex-cost-usage packages."""
