from fieldsync.merge.service import MergedJob, OfflineDataMerger, OfflineUpdateInfo, merge_edits

__all__ = ["MergedJob", "OfflineDataMerger", "OfflineUpdateInfo", "merge_edits"]
