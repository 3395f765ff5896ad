"""Per-period usage accounting."""
