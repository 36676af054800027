"""Sync layer: connectivity, offline enqueue, change propagation and the recording view."""
