"""Classifier package: event normalization and per-object history."""

from podmedic.classifier.classifier import EventClassifier
from podmedic.classifier.history import HistoryStore, ObjectHistory

__all__ = [
    "EventClassifier",
    "HistoryStore",
    "ObjectHistory",
]
