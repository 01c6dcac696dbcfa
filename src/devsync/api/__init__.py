"""DEVSYNC HTTP API."""
