from __future__ import annotations
import os
import sys
import uvicorn

# --- Make sure ./src is on sys.path so `featureflags.*` is importable ---
BASE_DIR = os.path.dirname(__file__)        # points to "<repo>/src"
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

if __name__ == "__main__":
    from featureflags.core.config import settings

    uvicorn.run("featureflags.main:app", host="0.0.0.0", port=int(settings.PORT), reload=False)
