from __future__ import annotations


class ImportFailed(Exception):
    """Base class for errors raised by the export import pipeline."""


class MalformedArchive(ImportFailed):
    """The archive is unreadable or a required top-level file is missing/invalid."""


class EntryParseError(ImportFailed):
    """A single message-day file could not be parsed. Recovered by skipping it."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class PersistenceError(ImportFailed):
    """A write against the local store failed."""


class AssetFetchError(ImportFailed):
    """Fetching or storing one asset failed. Recovered by skipping the asset."""

    def __init__(self, file_id: str, reason: str) -> None:
        super().__init__(f"asset {file_id}: {reason}")
        self.file_id = file_id
        self.reason = reason
