"""HTTP surface for access-code recovery and progress administration."""
