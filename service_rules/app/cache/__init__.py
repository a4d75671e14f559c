"""Rule cache with tag indices and LRU eviction."""
