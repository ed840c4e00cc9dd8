"""Interface layer: command-line entry point."""
