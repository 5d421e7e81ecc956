from __future__ import annotations

import json
import logging

LOGGER = logging.getLogger("aetherproxy")
APP_VERSION = "0.1.0"

GEMINI_API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
CLOUD_CODE_BASE_URL = "https://cloudcode-pa.googleapis.com"
CLOUD_CODE_REGION = "us-central1"

SOURCE_API_KEY = "gemini-api-key-direct"
SOURCE_CLOUD_CODE = "cloud-ai-companion"
SOURCE_HEADER = "X-Proxy-Source"

API_KEY_HEADER = "x-goog-api-key"
PROJECT_ID_HEADER = "x-project-id"

CLOUD_CODE_HEADERS = {
    "User-Agent": "antigravity/1.15.8 win32/x64",
    "X-Goog-Api-Client": "google-cloud-sdk vscode_cloudshelleditor/0.1",
    "Client-Metadata": json.dumps(
        {
            "ideType": "VSCODE",
            "platform": "WINDOWS",
            "pluginType": "GEMINI",
        }
    ),
}

DEFAULT_CORS_ORIGINS = {
    "http://localhost:3000",
    "http://127.0.0.1:3000",
}
