"""Storage path guardrails."""
