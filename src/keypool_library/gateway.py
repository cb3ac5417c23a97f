# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Upstream base URL resolution.

The gateway directive (``CF_GATEWAY``) selects between calling the Gemini API
directly and going through a Cloudflare AI Gateway:

- unset or empty: direct
- ``"1"``: the built-in default gateway project
- ``"<32 hex project id>/<gateway name>"``: a custom gateway

Anything malformed falls back to the direct URL. Resolution never raises.
"""

import re
from typing import Optional

DIRECT_BASE_URL = "https://generativelanguage.googleapis.com"
CF_GATEWAY_BASE = "https://gateway.ai.cloudflare.com/v1"
GATEWAY_PROVIDER_PATH = "google-ai-studio"

DEFAULT_GATEWAY_FLAG = "1"
DEFAULT_PROJECT_ID = "db16589aa22233d56fe69a2c3161fe3c"
DEFAULT_GATEWAY_NAME = "gemini"

API_VERSION = "v1beta"

PROJECT_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$", re.IGNORECASE)


def is_valid_project_id(project_id: Optional[str]) -> bool:
    return bool(project_id) and PROJECT_ID_PATTERN.match(project_id) is not None


def gateway_url(project_id: str, gateway_name: str) -> str:
    return f"{CF_GATEWAY_BASE}/{project_id}/{gateway_name}/{GATEWAY_PROVIDER_PATH}"


def resolve_base_url(directive: Optional[str] = None) -> str:
    """
    Compute the base URL for upstream calls from a gateway directive.

    Args:
        directive: Value of the gateway setting, or None

    Returns:
        The gateway URL if the directive is well formed, else the direct URL
    """
    if not directive or not isinstance(directive, str):
        return DIRECT_BASE_URL

    if directive == DEFAULT_GATEWAY_FLAG:
        # The baked-in project id is checked like any user-supplied one
        if is_valid_project_id(DEFAULT_PROJECT_ID):
            return gateway_url(DEFAULT_PROJECT_ID, DEFAULT_GATEWAY_NAME)
        return DIRECT_BASE_URL

    if "/" in directive:
        parts = directive.split("/")
        project_id, gateway_name = parts[0], parts[1]
        if gateway_name and is_valid_project_id(project_id):
            return gateway_url(project_id, gateway_name)

    return DIRECT_BASE_URL


def generate_content_url(base_url: str, model: str) -> str:
    return f"{base_url}/{API_VERSION}/models/{model}:generateContent"


def models_list_url(base_url: str) -> str:
    return f"{base_url}/{API_VERSION}/models"
