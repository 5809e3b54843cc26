"""Row-dict repositories over the storage gateway."""
