"""Background refreshers that write stats into the cache store."""
