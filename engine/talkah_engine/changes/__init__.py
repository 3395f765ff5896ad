"""Plan change classification, state machine and shared state mutations."""
