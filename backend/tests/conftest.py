import os
import sys


# Tests import `backend.*`, so the repo root has to be importable whether pytest
# runs from the root or from inside `backend/`.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

# Settings are read at import time; pin the ones receipts and the dashboard use.
os.environ.setdefault("APP_ENV", "local")
os.environ.setdefault("CURRENCY_LABEL", "Rs.")
os.environ.setdefault("LOW_STOCK_THRESHOLD", "10")
