"""Application configuration."""

import os
from pathlib import Path
from dotenv import load_dotenv

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent

# Load .env from backend root (before any os.getenv calls)
load_dotenv(BASE_DIR / ".env")
TEMP_DIR = Path(os.getenv("CLAUSECHECK_TEMP_DIR", str(BASE_DIR / "temp")))
DATA_DIR = TEMP_DIR / "data"          # documents / chunks / analyses (JSON)
CHROMA_DIR = TEMP_DIR / "vectordb"    # ChromaDB persistent storage
PROMPTS_DIR = BASE_DIR / "prompts"

# Create directories
for d in [TEMP_DIR, DATA_DIR, CHROMA_DIR]:
    d.mkdir(parents=True, exist_ok=True)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes")


# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen3:32b")
EMBED_MODEL = os.getenv("EMBED_MODEL", "nomic-embed-text")
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "100"))   # Texts per embedding API call
LLM_TIMEOUT = int(os.getenv("LLM_TIMEOUT", "120"))             # Seconds per HTTP request
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
LLM_CONTEXT_WINDOW = 131072
LLM_TEMPERATURE = 0.1

# Vector store backend: "chroma" (persistent) or "memory" (process-local, tests/dev)
VECTOR_BACKEND = os.getenv("VECTOR_BACKEND", "chroma").strip().lower()
CHROMA_COLLECTION = "contract_chunks"

# Ingestion
CHUNK_CACHE_DOCUMENTS = int(os.getenv("CHUNK_CACHE_DOCUMENTS", "32"))   # parsed corpora kept in memory
# "reject" → 409 naming the existing document; "reuse" → copy its chunks and vectors
DUPLICATE_UPLOAD_POLICY = os.getenv("DUPLICATE_UPLOAD_POLICY", "reject").strip().lower()
AUTO_ANALYZE_ON_UPLOAD = _env_flag("AUTO_ANALYZE_ON_UPLOAD", False)

# Pre-screening: tuned constants, exposed as configuration
VECTOR_SIMILARITY_THRESHOLD = float(os.getenv("VECTOR_SIMILARITY_THRESHOLD", "0.65"))
TOP_K_PER_PROVISION = int(os.getenv("TOP_K_PER_PROVISION", "5"))     # canonical query + final cap
TOP_K_PER_SYNONYM = int(os.getenv("TOP_K_PER_SYNONYM", "3"))         # each synonym / search query
KEYWORD_BASE_SCORE = float(os.getenv("KEYWORD_BASE_SCORE", "0.70"))
KEYWORD_PATTERN_BONUS = float(os.getenv("KEYWORD_PATTERN_BONUS", "0.05"))  # per distinct matched pattern
BOTH_MATCH_BOOST = float(os.getenv("BOTH_MATCH_BOOST", "0.10"))           # vector + keyword agreement
ALWAYS_INCLUDE_EXACT_MATCHES = _env_flag("ALWAYS_INCLUDE_EXACT_MATCHES", True)

# Batching
MAX_PROVISIONS_PER_BATCH = int(os.getenv("MAX_PROVISIONS_PER_BATCH", "15"))
MIN_CANDIDATES_FOR_LLM = int(os.getenv("MIN_CANDIDATES_FOR_LLM", "1"))
CANDIDATE_TEXT_MAX_CHARS = int(os.getenv("CANDIDATE_TEXT_MAX_CHARS", "2000"))

# Verification
MAX_CONCURRENT_BATCHES = int(os.getenv("MAX_CONCURRENT_BATCHES", "3"))
STEP_LIMITS = {
    "critical": 60,
    "high": 30,
    "medium": 30,
    "low": 20,
}
DEFAULT_STEP_LIMIT = 40   # mixed-tier batches

# Timeouts (seconds)
PRESCREENING_TIMEOUT = float(os.getenv("PRESCREENING_TIMEOUT", "30"))
BATCH_TIMEOUT = float(os.getenv("BATCH_TIMEOUT", "120"))
ANALYSIS_TIMEOUT = float(os.getenv("ANALYSIS_TIMEOUT", "300"))

# Feature flags
ENABLE_PARALLEL_BATCHES = _env_flag("ENABLE_PARALLEL_BATCHES", True)
ENABLE_AUTO_NOT_FOUND = _env_flag("ENABLE_AUTO_NOT_FOUND", True)
ENABLE_PROVISION_CLUSTERS = _env_flag("ENABLE_PROVISION_CLUSTERS", True)

# Provision catalog
CATALOG_VERSION = "1.1.0"
PROVISION_CATALOG_PATH = os.getenv("PROVISION_CATALOG_PATH", "")   # empty → built-in catalog

PRIORITIES = ["critical", "high", "medium", "low"]   # strict verification order

# Risk scoring: weight per NOT-matched provision, total capped at 100
RISK_WEIGHTS = {
    "critical": 30,
    "high": 20,
    "medium": 10,
    "low": 5,
}
RISK_SCORE_CAP = 100

# Risk score bands (higher score = more missing protection)
RISK_BANDS = {
    "LOW": {"min": 0, "max": 19, "color": "#1A7A3A", "label": "Low Risk"},
    "MEDIUM": {"min": 20, "max": 49, "color": "#C27A00", "label": "Medium Risk"},
    "HIGH": {"min": 50, "max": 79, "color": "#BF4A00", "label": "High Risk"},
    "CRITICAL": {"min": 80, "max": 100, "color": "#BF1C2E", "label": "Critical Risk"},
}
