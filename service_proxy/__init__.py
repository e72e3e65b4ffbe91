"""Caching forwarding proxy service."""
