# Namespace for the ORM models.
from .job import JobPriority, JobStatus, JobType, ProcessingJob
from .transcript import Transcript, TranscriptStatus
from .video import Video, VideoStatus

__all__ = [
    "JobPriority",
    "JobStatus",
    "JobType",
    "ProcessingJob",
    "Transcript",
    "TranscriptStatus",
    "Video",
    "VideoStatus",
]
