"""FastAPI server exposing the remote store, object storage and change feed."""
