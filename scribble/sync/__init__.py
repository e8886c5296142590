"""Sync infrastructure for Scribble devices.

Provides the merge engine that reconciles two task list snapshots, the
HTTP client for the remote blob store, and the orchestrator that decides
when to sync and applies the converged result.
"""

from .blob_client import BlobClient, SyncEndpoint
from .merge import apply_tombstones, merge_blobs, merge_states
from .orchestrator import SyncOrchestrator, SyncResult, SyncStatus

__all__ = [
    "BlobClient",
    "SyncEndpoint",
    "SyncOrchestrator",
    "SyncResult",
    "SyncStatus",
    "apply_tombstones",
    "merge_blobs",
    "merge_states",
]
