"""Application layer: preservation merge, propagation, cycle and quick operations."""
