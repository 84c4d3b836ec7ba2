"""Backing-store health signals and the gate that waits on them."""
