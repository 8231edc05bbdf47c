from .base import AppointmentStore, StoreError
from .memory import InMemoryStore

__all__ = ["AppointmentStore", "InMemoryStore", "StoreError"]
