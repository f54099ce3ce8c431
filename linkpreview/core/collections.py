class CollectionNames:
    """MongoDB collection names used by the service."""

    CACHE_ENTRIES = "cache_entries"
