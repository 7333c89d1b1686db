"""Global constants for devpreview."""

# Networking
DEFAULT_HOST = "127.0.0.1"
MAX_PORT = 65535
DEFAULT_MAX_PORT_TRIES = 50
PORT_PROBE_TIMEOUT = 1.0

# Lock files (relative to the user's home directory)
LOCK_DIR_NAME = ".devpreview"
LOCK_SUBDIR_NAME = "preview-locks"

# Process lifecycle timings (seconds)
SPAWN_TIMEOUT = 5.0
STOP_GRACE_PERIOD = 5.0
READY_WARNING_DELAY = 10.0
STATIC_SETTLE_DELAY = 1.0

# Idle reaping (seconds)
IDLE_THRESHOLD = 60 * 60
REAP_INTERVAL = 10 * 60

# Per-project log ring buffer
LOG_BUFFER_SIZE = 1000

# Environment handed to every dev server (PORT is added per instance)
DEV_SERVER_ENV = {
    "NODE_ENV": "development",
    "HOST": "0.0.0.0",
    "BROWSER": "none",
}

# Prefix for settings overrides read from the environment
ENV_PREFIX = "DEVPREVIEW_"
