"""Middleware components."""
