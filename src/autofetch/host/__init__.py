from autofetch.host.interfaces import ArtifactStore, RecordStore, TaskRunner

__all__ = ["ArtifactStore", "RecordStore", "TaskRunner"]
