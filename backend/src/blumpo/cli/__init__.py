"""Operational command-line tools."""
