"""
Core configuration and constants for the media proxy backend.
"""
import os

# Cache configuration
# An empty VIDEO_CACHE_DIR disables disk caching entirely.
CACHE_DIR = os.environ.get("VIDEO_CACHE_DIR", "data/video_cache")
MAX_CACHE_BYTES = 500 * 1024 * 1024  # Don't commit cache entries larger than 500MB
STALE_TEMP_AGE_SECONDS = 3600  # Orphaned .tmp files older than 1 hour are swept
TEMP_SWEEP_INTERVAL_SECONDS = 600  # Sweep every 10 minutes

# Proxy configuration
MAX_SIZE_BYTES = 5 * 1024 * 1024 * 1024  # Refuse to proxy anything larger than 5GB
CONNECT_TIMEOUT_SECONDS = 15.0  # Initial connection + response headers
IDLE_TIMEOUT_SECONDS = 30.0  # Abort if no bytes arrive for this long
MAX_REDIRECTS = 5
STREAM_CHUNK_SIZE = 64 * 1024

# Background download configuration
MAX_CONCURRENT_DOWNLOADS = 3
DOWNLOAD_TIMEOUT_SECONDS = 120.0
MAX_DOWNLOAD_REDIRECTS = 5

# Allowed origins for CORS (comma-separated)
ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "").split(",") if os.environ.get("ALLOWED_ORIGINS") else ["*"]
