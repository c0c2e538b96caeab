"""Heartlock chat backend."""
