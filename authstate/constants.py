# authstate/constants.py

STRATEGY_LEGACY = "legacy"
STRATEGY_NORMALIZED = "normalized"
STRATEGIES = (STRATEGY_LEGACY, STRATEGY_NORMALIZED)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 3306
DEFAULT_USER = "root"
DEFAULT_DATABASE = "db/auth_state.db"
DEFAULT_TABLE_PREFIX = "auth"
DEFAULT_LEGACY_TABLE = "auth"
DEFAULT_SESSION = "default"

DEFAULT_RETRIES = 10
DEFAULT_RETRY_DELAY_MS = 200
DEFAULT_RETRY_MAX_DELAY_MS = 5000

DEFAULT_CACHE_TTL = 300.0
DEFAULT_CACHE_MAXSIZE = 10_000

# SQLite caps bound parameters per statement; stay well below it
MAX_IN_CLAUSE = 500

CREDS_ID = "creds"
ALL_SESSIONS = "ALL"

# normalized table suffixes, one per key category
DEVICES_SUFFIX = "devices"
TABLE_SUFFIXES = {
    "pre-key": "pre_keys",
    "session": "sessions",
    "sender-key": "sender_keys",
    "sender-key-memory": "sender_key_memory",
    "app-state-sync-key": "app_state_sync_keys",
    "app-state-sync-version": "app_state_sync_versions",
}

ENV_PREFIX = "AUTHSTATE_"
