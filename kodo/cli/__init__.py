"""Kodo command-line interface."""
