"""Third-party AI provider clients."""
