"""
Remote module - client interface to the remote source of truth.

Factory function for creating a remote store client based on configuration.
"""

from .base import ChangeSubscription, RemoteStore

__all__ = ["ChangeSubscription", "RemoteStore", "create_remote_store"]


def create_remote_store(mode: str, user_id: str, **kwargs) -> RemoteStore:
    """
    Factory function to create a remote store client.

    Args:
        mode: "sql" (requires ``backend=RemoteBackend``) or "http"
            (requires ``base_url``; accepts ``api_key``, ``timeout``, ``client``)
        user_id: The user the client acts for
        **kwargs: Mode-specific configuration

    Returns:
        RemoteStore implementation instance

    Raises:
        ValueError: If mode is unknown
    """
    if mode == "sql":
        from .sql import SqlRemoteStore

        return SqlRemoteStore(user_id=user_id, **kwargs)
    elif mode == "http":
        from .http import HttpRemoteStore

        return HttpRemoteStore(user_id=user_id, **kwargs)
    else:
        raise ValueError(f"Unknown remote store mode: {mode}")
