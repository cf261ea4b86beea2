"""Shared infrastructure: errors, auth, retry, migrations."""
