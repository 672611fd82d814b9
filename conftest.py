import os
import sys
from pathlib import Path

# Ensure repo root on sys.path for imports from anywhere in tests tree.
ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("VERSION_STORE_BACKEND", "memory")
os.environ.setdefault("BLOB_STORE_BACKEND", "memory")
os.environ.setdefault("BILLING_BACKEND", "memory")
os.environ.setdefault("VERSION_STORE_LOCK_TIMEOUT_SECONDS", "5")
