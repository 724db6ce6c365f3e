import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

ROOM_ID_LENGTH = int(os.getenv("ROOM_ID_LENGTH", 8))
ROOM_ID_ATTEMPTS = int(os.getenv("ROOM_ID_ATTEMPTS", 10))

DEFAULT_HOST_NAME = os.getenv("DEFAULT_HOST_NAME", "Host")
DEFAULT_GUEST_NAME = os.getenv("DEFAULT_GUEST_NAME", "Guest")

# Client side
NEGOTIATION_TIMEOUT = float(os.getenv("NEGOTIATION_TIMEOUT", 30))
STUN_URL = os.getenv("STUN_URL", "stun:stun.l.google.com:19302")
SIGNALING_URL = os.getenv("SIGNALING_URL", f"ws://localhost:{PORT}/ws")
