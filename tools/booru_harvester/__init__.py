"""
Booru Harvester – Bulk-download Gelbooru posts (image + tags) to disk.

Supports:
  • Paginated tag queries against the Gelbooru DAPI JSON endpoint
  • Rate-limited, retrying HTTP with Retry-After handling
  • Bounded concurrent downloads with MD5 verification on a separate pool
  • Resumable operation via a persistent content-hash ledger
"""
