from .client import AnkiConnectClient
from .supervisor import ConnectionSupervisor

__all__ = ["AnkiConnectClient", "ConnectionSupervisor"]
