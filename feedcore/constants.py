"""
Constants and default configuration values for the feed pipeline.
"""

# Priority Tiers (hours between checks)
PRIORITY_INTERVAL_HOURS = {
    "high": 1.0,
    "medium": 24.0,
    "low": 168.0,  # 7 days
}
DEFAULT_PRIORITY = "medium"
HIGH_PRIORITY_SOURCES = [
    "reuters.com",
    "apnews.com",
    "bbc.co.uk",
    "bbci.co.uk",
    "cnn.com",
    "aljazeera.com",
    "npr.org",
]

# Scheduler
SCHEDULER_BATCH_LIMIT = 50
ERROR_BACKOFF_MULTIPLIER = 2.0
ERROR_BACKOFF_MAX_HOURS = 168.0  # Never back off past the low-priority interval
FEED_ERROR_THRESHOLD = 3  # Consecutive failures before a feed is flagged

# Sync Executor
SYNC_CONCURRENCY = 5
SYNC_FETCH_TIMEOUT = 30.0  # seconds, per feed
SYNC_MAX_ITEMS = 100
SYNC_USER_AGENT = "feedcore/0.1 (+https://github.com/feedcore/feedcore)"
SYNC_ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8"
EXCERPT_LENGTH = 300
EXCERPT_MIN_BREAK = 200  # Cut at the last space only past this index
SYNC_MAX_FEED_BYTES = 50 * 1024 * 1024
MIN_TITLE_LENGTH = 3

# Embedding Queue
EMBEDDING_MAX_ATTEMPTS = 3
EMBEDDING_DRAIN_BATCH_SIZE = 50
EMBEDDING_DRAIN_CONCURRENCY = 4
EMBEDDING_DAILY_LIMIT = 500  # Per user
EMBEDDING_OPERATION = "embedding"
EMBEDDING_QUEUE_PRIORITY = {"high": 2, "medium": 1, "low": 0}  # By feed priority
EMBEDDING_REQUEUE_PRIORITY = 1
EMBEDDING_STALE_PROCESSING_MINUTES = 10  # In-flight items older than this are reclaimed

# Embedding Provider
EMBEDDING_API_BASE = "https://api.openai.com/v1"
EMBEDDING_API_KEY_ENV = "OPENAI_API_KEY"
EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSIONS = 1536
EMBEDDING_REQUESTS_PER_SECOND = 5.0
EMBEDDING_INPUT_MAX_CHARS = 8000
EMBEDDING_HTTP_TIMEOUT = 30.0

# Clustering
CLUSTER_SIMILARITY_THRESHOLD = 0.60
KEYWORD_OVERLAP_MIN = 3
MIN_CLUSTER_SOURCES = 3
MIN_CLUSTER_ARTICLES = 3
CLUSTER_TIME_WINDOW_HOURS = 48.0
CLUSTER_EXPIRY_BUFFER_HOURS = 48.0
CLUSTER_RECENCY_HALF_LIFE_HOURS = 24.0
CLUSTER_LIST_LIMIT = 10
CLUSTER_TITLE_MAX_CHARS = 100
CLUSTER_SUMMARY_MAX_CHARS = 200
CLUSTER_LABEL_SAMPLES = 10  # Member titles sent to the labeller

# Cluster Labelling (LLM)
LLM_API_BASE = "https://api.openai.com/v1"
LLM_API_KEY_ENV = "FEEDCORE_LLM_API_KEY"
LLM_LABEL_MODEL = "gpt-4o-mini"
LLM_TEMPERATURE = 0.2
LLM_LABEL_MAX_TOKENS = 200
LLM_MAX_RETRIES = 3
LLM_RETRY_BACKOFF_MIN = 1.0
LLM_RETRY_BACKOFF_MAX = 8.0
LLM_HTTP_TIMEOUT = 30.0

# Similar Articles
SIMILAR_ARTICLES_THRESHOLD = 0.7
SIMILAR_ARTICLES_MAX_RESULTS = 5
SIMILAR_ARTICLES_CACHE_TTL = 3600  # 1 hour

# Health Reporting
HEALTH_DEFAULT_DAYS = 7
HEALTH_RECENT_SYNCS = 10

# Storage
STORE_PATH = ".cache/feedcore_store.json"
STORE_BACKUPS = 3
