"""mailbridge conventions

Canonical names and defaults that every part of the bridge agrees on.
Values that operators may change live in the config file (see schema.py);
the defaults there MUST match the constants here.
"""

# --- Configuration ---
# Searched in the working directory, in order, when no --config is given.
CONFIG_FILENAMES = ("config.yaml", "config.yml", "config.json")

# --- Cursor Store ---
DEFAULT_STORE_FILENAME = "kv.json"
# The one key the watermark is persisted under.
WATERMARK_KEY = "lastSeenUid"

# --- Mailbox ---
DEFAULT_MAILBOX = "INBOX"
DEFAULT_TRASH_FOLDER = "Trash"
IMAP_PORT = 143
IMAPS_PORT = 993

# --- Pipeline tuning ---
BATCH_SIZE = 20
WAIT_AFTER_MESSAGE_MS = 100
NOOP_INTERVAL_MS = 60_000
RECONNECT_DELAY_SECONDS = 1.0
# IDLE is re-issued after this long; servers drop IDLE sessions after ~30 min.
IDLE_TIMEOUT_SECONDS = 300
CONNECT_TIMEOUT_SECONDS = 30

# --- Rendering ---
MAX_TEXT_LENGTH = 2048
REPLY_MARKER = "---- On "

# --- Telegram ---
TELEGRAM_API_BASE = "https://api.telegram.org"
CALLBACK_READ_PREFIX = "mail:read_"
CALLBACK_DELETE_PREFIX = "mail:delete_"
UPDATES_LONG_POLL_SECONDS = 30

# --- Logging ---
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 3
