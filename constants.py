import os
import uuid

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
RELOAD = os.getenv("RELOAD", "false").lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

# Header set by a trusted proxy with the caller's address, e.g. "CF-Connecting-IP"
CLIENT_IP_HEADER = os.getenv("CLIENT_IP_HEADER", None)

ROOM_NAMESPACE = uuid.UUID(os.getenv("ROOM_NAMESPACE", "6f1c2a4e-3b7d-4c5e-9a8f-0d2e1b3c4a5f"))

# Fixed control frames, byte-exact on the wire
HEARTBEAT = '{"type":"HEARTBEAT"}'
OPEN = '{"type":"OPEN"}'
ID_TAKEN = '{"type":"ID-TAKEN","payload":{"msg":"ID is taken"}}'
ID_TAKEN_REASON = "ID is taken"
