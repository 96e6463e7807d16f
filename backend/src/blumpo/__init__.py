"""Blumpo ad generation coordination backend."""
