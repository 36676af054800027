"""Service layer: storage, processing, remote store, sync and providers."""
