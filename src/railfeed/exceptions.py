"""Exceptions raised by railfeed."""


class RailfeedError(Exception):
    """Base class for railfeed errors."""


class DataLoadError(RailfeedError):
    """Static reference data is missing or malformed."""


class FeedFetchError(RailfeedError):
    """A feed group could not be fetched or decoded."""

    def __init__(self, group_id: str, message: str):
        super().__init__(f"Feed {group_id}: {message}")
        self.group_id = group_id


class UnknownFeedGroupError(RailfeedError, ValueError):
    """The requested feed group does not exist."""

    def __init__(self, group_id: str):
        super().__init__(f"Unknown feed group: {group_id}")
        self.group_id = group_id


class FeedUnavailableError(RailfeedError):
    """No feed data has ever been computed for the requested groups."""
