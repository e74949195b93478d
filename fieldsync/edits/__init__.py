from fieldsync.edits.service import EditQueueService, edit_to_dict, upload_to_dict
from fieldsync.edits.types import PhotoFile, QueueCounts, QueuedEdit, QueuedPhotoUpload

__all__ = [
    "EditQueueService",
    "PhotoFile",
    "QueueCounts",
    "QueuedEdit",
    "QueuedPhotoUpload",
    "edit_to_dict",
    "upload_to_dict",
]
