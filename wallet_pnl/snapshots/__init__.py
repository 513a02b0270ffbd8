from .recorder import SnapshotRecorder, SnapshotSummary

__all__ = ['SnapshotRecorder', 'SnapshotSummary']
