from tripsync.datastore.engine import Database
from tripsync.datastore.store import PersistentStore

__all__ = ["Database", "PersistentStore"]
