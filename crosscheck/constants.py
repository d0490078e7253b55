from __future__ import annotations

from typing import Any, Dict, List

DEFAULT_BATCH_NAME = "Modern Cross-Browser Testing Workshop"
DEFAULT_APP_NAME = "crosscheck"
DEFAULT_TEST_NAME = "default"
DEFAULT_CONCURRENCY = 5

DEFAULT_ENVIRONMENTS: List[Dict[str, Any]] = [
    # Desktop
    {"width": 800, "height": 600, "browser_name": "chrome"},
    {"width": 700, "height": 500, "browser_name": "firefox"},
    {"width": 1024, "height": 768, "browser_name": "edgechromium"},
    {"width": 800, "height": 600, "browser_name": "safari"},
    # Mobile
    {"device_name": "iPhone X", "orientation": "portrait"},
    {"device_name": "Pixel 2", "orientation": "portrait"},
    {"device_name": "Galaxy S5", "orientation": "portrait"},
    {"device_name": "Nexus 10", "orientation": "portrait"},
    {"device_name": "iPad Pro", "orientation": "landscape"},
]

# Browser names accepted in environment descriptors mapped to Playwright engines.
BROWSER_ENGINES: Dict[str, str] = {
    "chrome": "chromium",
    "chromium": "chromium",
    "edgechromium": "chromium",
    "edge": "chromium",
    "firefox": "firefox",
    "safari": "webkit",
    "webkit": "webkit",
}
