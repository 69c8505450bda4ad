"""Simulated multi-node packet network with a per-node protocol stack."""
