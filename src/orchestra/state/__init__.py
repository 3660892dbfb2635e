from orchestra.state.store import JsonStateStore, RevisionConflict, StateError

__all__ = ["JsonStateStore", "RevisionConflict", "StateError"]
