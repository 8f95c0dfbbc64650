"""
Constants and default configuration values for semantic content discovery.
"""

# Embedding
EMBEDDING_DIMENSION = 768
EMBEDDING_MAX_TEXT_CHARS = 512  # Deterministic truncation before any tier
EMBEDDING_MIN_CLIP = 1e-9
EMBEDDING_CACHE_DIR = ".cache/embeddings"
EMBEDDING_CACHE_MAX_FILES = 20000
EMBEDDING_REMOTE_URL = "https://api.openai.com/v1/embeddings"
EMBEDDING_REMOTE_MODEL = "text-embedding-3-small"
EMBEDDING_REMOTE_TIMEOUT = 5.0
EMBEDDING_HTTP_TIMEOUT = 30.0  # Client-side; a late vector still lands in the cache
EMBEDDING_LOCAL_MODEL_DIR = "onnx_model"
EMBEDDING_LOCAL_MODEL_ID = "all-MiniLM-L6-v2"
EMBEDDING_LOCAL_TIMEOUT = 10.0
EMBEDDING_LOCAL_BATCH_SIZE = 8
EMBEDDING_LOCAL_MAX_TOKENS = 256
EMBEDDING_PROJECTION_SEED = 1729  # Fixed so reprojection is stable across restarts
DEGRADED_SIMILARITY_DISCOUNT = 0.5  # Pull degraded similarity halfway to neutral

# Similarity Bounds
SIMILARITY_MIN = -1.0
SIMILARITY_MAX = 1.0
NEUTRAL_SIMILARITY_FACTOR = 0.5

# Clustering
CLUSTER_SIMILARITY_THRESHOLD = 0.60  # Tuned for the remote provider's vector space
CLUSTER_WINDOW_HOURS = 24
CLUSTER_WINDOW_MAX_ITEMS = 500
CLUSTER_MIN_SIZE = 3
CLUSTER_MAX_TOPICS = 15
CLUSTER_REPRESENTATIVES = 8  # Members sent to the summarizer per cluster
CLUSTER_REPRESENTATIVE_MAX_CHARS = 400
CLUSTER_CADENCE_SECONDS = 90.0
CLUSTER_REFRESH_COOLDOWN_SECONDS = 30.0
TOPIC_TTL_SECONDS = 120.0
TOPIC_MERGE_MIN_JACCARD = 0.5
TOPIC_KEYWORDS = 5
TOPIC_REGIONAL_WINDOW_SECONDS = 45.0
TOPIC_REGIONAL_SLOT = 2  # Position the regional topic occupies in the list
SYNTHESIS_CACHE_MAX_ENTRIES = 256

# Summarization
LLM_API_URL = "https://api.groq.com/openai/v1/chat/completions"
LLM_MODEL = "llama-3.3-70b-versatile"
LLM_TEMPERATURE = 0.2
LLM_MAX_TOKENS = 400
LLM_TIMEOUT = 20.0  # Must stay below the cadence tick
LLM_HTTP_TIMEOUT = 60.0  # Client-side; late syntheses are cached for the next tick
LLM_CONNECT_TIMEOUT = 5.0
LLM_MAX_RETRIES = 2
LLM_MIN_REQUEST_INTERVAL = 1.0
LLM_TITLE_MAX_CHARS = 60
LLM_HTTP_USER_AGENT = "semantic-discovery/0.1"
RATE_LIMIT_ERROR_BACKOFF_BASE = 0.5
RATE_LIMIT_ERROR_BACKOFF_MAX = 5.0

# Ranking
DEFAULT_WEIGHT_RECENCY = 0.35
DEFAULT_WEIGHT_SIMILARITY = 0.25
DEFAULT_WEIGHT_SOCIAL = 0.25
DEFAULT_WEIGHT_TRENDING = 0.15
WEIGHT_SUM_EPSILON = 1e-6
RECENCY_HALF_LIFE_HOURS = 24.0
CANDIDATE_WINDOW_DAYS = 30
CANDIDATE_MAX_ITEMS = 500
SOCIAL_FOLLOWED = 1.0
SOCIAL_MUTUAL = 0.5
SOCIAL_NONE = 0.1
SAMPLING_MIN_WEIGHT = 0.01  # Every eligible item keeps a non-zero draw chance
INTEREST_MAX_VECTORS = 70  # Recent likes (50) + authored (20)
INTEREST_CACHE_TTL = 300.0
INTEREST_REFRESH_TIMEOUT = 2.0
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Engagement
ENGAGEMENT_LIKE_WEIGHT = 1.0
ENGAGEMENT_REPLY_WEIGHT = 2.0
ENGAGEMENT_SHARE_WEIGHT = 3.0
ENGAGEMENT_MIN_AGE_HOURS = 1.0

# Navigation
USER_STATE_TTL_SECONDS = 1800.0
USER_STATE_MAX_ENTRIES = 100000
USER_STATE_SWEEP_INTERVAL = 60.0

# HTTP surface
RESPONSE_CACHE_SECONDS = 5
