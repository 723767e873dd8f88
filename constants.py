import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

REDIS_URL = f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}"

# "redis" for production collaborators, "memory" for local development
HUB_BACKEND = os.getenv("HUB_BACKEND", "redis")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

# Liveness: clients heartbeat every HEARTBEAT_INTERVAL seconds, eviction after twice that
HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", 30))
TYPING_TIMEOUT = float(os.getenv("TYPING_TIMEOUT", 5))
PRESENCE_DEBOUNCE = float(os.getenv("PRESENCE_DEBOUNCE", 2))
MAINTENANCE_INTERVAL = float(os.getenv("MAINTENANCE_INTERVAL", 1))

# Backpressure: frames queued per connection before it is dropped as a slow consumer
OUTBOUND_QUEUE_LIMIT = int(os.getenv("OUTBOUND_QUEUE_LIMIT", 1000))

MAX_FRAME_SIZE = int(os.getenv("MAX_FRAME_SIZE", 64 * 1024))
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", 4000))
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", 50))
MESSAGE_RETENTION = int(os.getenv("MESSAGE_RETENTION", 1000))
SESSION_TTL = int(os.getenv("SESSION_TTL", 24 * 60 * 60))
