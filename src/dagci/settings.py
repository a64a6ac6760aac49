from __future__ import annotations
import os

CACHE_DIR = os.environ.get("DAGCI_CACHE_DIR", ".dagci/cache")
WORKSPACE_DIR = os.environ.get("DAGCI_WORKSPACE_DIR", ".dagci/workspace")
WORKERS = int(os.environ["DAGCI_WORKERS"]) if os.environ.get("DAGCI_WORKERS") else None
CACHE_KEEP = int(os.environ.get("DAGCI_CACHE_KEEP", "5"))
LOG_LEVEL = os.environ.get("DAGCI_LOG_LEVEL", "INFO").upper()
LOG_JSON = os.environ.get("DAGCI_LOG_JSON", "").lower() in ("1", "true", "yes")
