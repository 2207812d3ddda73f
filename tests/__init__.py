"""charflow test suite."""
