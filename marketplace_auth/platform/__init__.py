"""Cross-cutting platform concerns: errors and secrets."""
