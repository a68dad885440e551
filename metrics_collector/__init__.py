"""
Metrics Collector

Pulls SEO and analytics metrics from third-party APIs and stores
normalized rows in a relational database:
1. Fetches from each configured source (rate-limited, batched, retried)
2. Resolves dimensions and content blobs to surrogate ids
3. Upserts fact rows, skipping or overwriting existing ones
4. Sends run notifications (Telegram, email)
"""

__version__ = "0.1.0"
