"""DEVSYNC utilities."""
