"""Core primitives shared across the runtime: token counting, keyed locks and the model gateway."""
