"""Client session shim: local mirror of the room for one participant."""

from roomrelay.client.local_store import LocalStore
from roomrelay.client.session import ClientSession

__all__ = ["ClientSession", "LocalStore"]
