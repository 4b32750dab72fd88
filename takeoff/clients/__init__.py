"""Expose constructed client wrappers."""

from .aws_sqs import SQSClient
from .dynamodb import DynamoDBClient
from .local_queue import SQLiteQueueClient
from .page_images import PageImage, PageImageSource, PageSourceError
from .sqlite_store import RecordStore, SQLiteStore, VersionConflictError
from .vision_llm import GeminiVisionClient, ProviderExhaustionError, VisionResponse

__all__ = [
    "DynamoDBClient",
    "GeminiVisionClient",
    "PageImage",
    "PageImageSource",
    "PageSourceError",
    "ProviderExhaustionError",
    "RecordStore",
    "SQLiteQueueClient",
    "SQLiteStore",
    "SQSClient",
    "VersionConflictError",
    "VisionResponse",
]
