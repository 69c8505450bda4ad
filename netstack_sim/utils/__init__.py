"""Utilities for exporting and visualizing simulation results."""
