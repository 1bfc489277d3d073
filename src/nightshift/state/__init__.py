from nightshift.state.store import ConcurrentUpdateError, StateStore, StateStoreError

__all__ = ["ConcurrentUpdateError", "StateStore", "StateStoreError"]
