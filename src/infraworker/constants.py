"""Constants for infraworker."""

SERVICE_NAME = "infrastructure-worker"

# Attempts at the lock compare-and-swap before giving up on a contended record
MAX_LOCK_RETRIES = 3

# Seconds to wait for a terminated worker before escalating to SIGKILL
GRACEFUL_SHUTDOWN_TIMEOUT = 5.0

# Seconds Worker.stop() waits for the background thread to finish its step
STOP_JOIN_TIMEOUT = 30.0

