"""Hosted generation providers."""
