from .classifier import Classifier, RandomClassifier
from .notifications import NotificationHub, Subscription
from .record_store import RecordStore, SqlRecordStore

__all__ = [
    "Classifier",
    "RandomClassifier",
    "NotificationHub",
    "Subscription",
    "RecordStore",
    "SqlRecordStore",
]
