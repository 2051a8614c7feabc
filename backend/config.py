import os

from dotenv import load_dotenv

# Load environment variables (STACKS_ROOT, SECRET_KEY, etc.)
load_dotenv()

# --- Stack storage ---
STACKS_ROOT = os.getenv("STACKS_ROOT", "/opt/peke/stacks")
MANIFEST_FILENAME = os.getenv("MANIFEST_FILENAME", "docker-compose.yml")

# --- Reverse proxy (Traefik) ---
ROUTING_NETWORK = os.getenv("ROUTING_NETWORK", "traefik-network")
ROUTING_ENTRYPOINT = os.getenv("ROUTING_ENTRYPOINT", "websecure")
CERT_RESOLVER = os.getenv("CERT_RESOLVER", "letsencrypt")
PROXY_CONTAINER_NAME = os.getenv("PROXY_CONTAINER_NAME", "traefik")
PROXY_IMAGE = os.getenv("PROXY_IMAGE", "traefik:v2.10")

# uid/gid of the default user inside most app images (node, n8n, ...)
VOLUME_OWNER_UID = int(os.getenv("VOLUME_OWNER_UID", "1000"))
VOLUME_OWNER_GID = int(os.getenv("VOLUME_OWNER_GID", "1000"))

# --- Timeouts / concurrency ---
UP_TIMEOUT_SEC = int(os.getenv("UP_TIMEOUT_SEC", "300"))
COMMAND_TIMEOUT_SEC = int(os.getenv("COMMAND_TIMEOUT_SEC", "120"))
STATS_MAX_WORKERS = int(os.getenv("STATS_MAX_WORKERS", "8"))
BATCH_MAX_ITEMS = int(os.getenv("BATCH_MAX_ITEMS", "50"))
BATCH_CONCURRENCY = int(os.getenv("BATCH_CONCURRENCY", "5"))

# --- Auth / logging ---
API_KEY = os.getenv("API_KEY")  # shared with the control platform
SECRET_KEY = os.getenv("SECRET_KEY")
ADMIN_USER = os.getenv("ADMIN_USER")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
