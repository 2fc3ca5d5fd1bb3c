from taskgate.state.store import ProjectStore, TaskgateStateError, utcnow_iso

__all__ = ["ProjectStore", "TaskgateStateError", "utcnow_iso"]
