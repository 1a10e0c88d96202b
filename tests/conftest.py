import sys
from pathlib import Path
import os

import pytest


# Ensure project src is on path for imports in tests
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for p in (ROOT, SRC):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

# Keep tests offline: no real provider keys, no Redis, no scan cooldown
for key in ("GOOGLE_API_KEY", "API_KEY", "XAI_API_KEY", "REDIS_URL"):
    os.environ.pop(key, None)
os.environ["SCAN_COOLDOWN_SECONDS"] = "0"

from bearwatch.config import Settings  # noqa: E402


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        google_api_key="test-google",
        xai_api_key="test-xai",
        scan_timeout=1.0,
        scan_cooldown_seconds=0,
    )


@pytest.fixture
def jpeg_data_url():
    # 1x1 jpeg-ish payload; content is never decoded as an image
    return "data:image/jpeg;base64,/9j/4AAQSkZJRgABAQAAAQABAAD/2wBDAAgGBgcGBQgHBwcJCQgKDBQNDAsLDBkSEw8U"
