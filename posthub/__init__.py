"""Posts with cache-aside reads, queued notifications and live broadcast."""
