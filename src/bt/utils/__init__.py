"""Utility helpers for bt: input validation and output formatting."""
