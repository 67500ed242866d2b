from .query import DownloadState, EntityQuery, QueryOrder, SyncState, read_id_list

__all__ = ["DownloadState", "EntityQuery", "QueryOrder", "SyncState", "read_id_list"]
