"""Configuration settings for the business logic analyzer."""
import os

# Model configuration
OPENAI_MODEL = os.getenv("PROBE_MODEL", "gpt-4.1")
EMBEDDING_MODEL = os.getenv("PROBE_EMBEDDING_MODEL", "text-embedding-3-small")

# Upstream calls (model completion and embeddings)
UPSTREAM_TIMEOUT = float(os.getenv("PROBE_UPSTREAM_TIMEOUT", "120"))
MAX_ATTEMPTS = int(os.getenv("PROBE_MAX_ATTEMPTS", "3"))
BACKOFF_BASE = float(os.getenv("PROBE_BACKOFF_BASE", "1.0"))

# Datastore
DB_PATH = os.getenv("PROBE_DB_PATH", ".logicprobe/store.db")

# Heuristics. These are estimates, not measurements.
CHARS_PER_TOKEN = int(os.getenv("PROBE_CHARS_PER_TOKEN", "4"))
TOKENS_PER_HIT = int(os.getenv("PROBE_TOKENS_PER_HIT", "100"))
PRICE_PER_TOKEN = float(os.getenv("PROBE_PRICE_PER_TOKEN", "0.00001"))

# Cache tiers
L2_SIMILARITY_THRESHOLD = float(os.getenv("PROBE_L2_THRESHOLD", "0.95"))
L3_CONFIDENCE = 0.85
SIMILAR_REQUEST_THRESHOLD = 0.8
SIMILAR_REQUEST_LIMIT = 5

# Project memory bounds
NOTES_MAX_CHARS = 5000
MAX_SUCCESS_EXPLOITS = 50
PATTERNS_KEPT_ON_PRUNE = 50
SUCCESS_MEMORIES_KEPT_ON_PRUNE = 20
PRUNE_EVERY = int(os.getenv("PROBE_PRUNE_EVERY", "10"))

# Check if OpenAI API key is available
USE_OPENAI = bool(os.getenv("OPENAI_API_KEY"))
