"""Firestore to MongoDB migration and user re-keying tools."""

__version__ = "0.1.0"
