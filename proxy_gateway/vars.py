import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "proxy-gateway")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")
LOG_MAX_BYTES = int(os.getenv("LOG_MAX_BYTES", str(10 * 1024 * 1024)))
LOG_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "5"))

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")

# Empty string disables the Prometheus endpoint
METRICS_PATH = os.getenv("METRICS_PATH", "/metrics")

# Extra seconds on top of the forward timeout before in-flight requests are abandoned
DRAIN_GRACE_SECONDS = float(os.getenv("DRAIN_GRACE_SECONDS", "5"))
