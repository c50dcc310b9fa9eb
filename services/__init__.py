"""Business logic for the subscription billing engine."""
