"""Command-line interface for spawnguard."""
