"""Code shared across packages."""
