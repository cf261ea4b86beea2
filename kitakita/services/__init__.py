"""Business logic and external service adapters."""
