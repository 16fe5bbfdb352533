"""tabkeeper command-line interface."""
