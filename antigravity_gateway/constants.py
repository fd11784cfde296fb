from __future__ import annotations

import json

ENDPOINT_DAILY = "https://daily-cloudcode-pa.sandbox.googleapis.com"
ENDPOINT_AUTOPUSH = "https://autopush-cloudcode-pa.sandbox.googleapis.com"
ENDPOINT_PROD = "https://cloudcode-pa.googleapis.com"

# Premium tier prefers the freshest sandbox deployments.
PREMIUM_ENDPOINTS: tuple[str, ...] = (ENDPOINT_DAILY, ENDPOINT_AUTOPUSH, ENDPOINT_PROD)
STANDARD_ENDPOINTS: tuple[str, ...] = (ENDPOINT_PROD,)
DISCOVERY_ENDPOINTS: tuple[str, ...] = (ENDPOINT_PROD, ENDPOINT_DAILY, ENDPOINT_AUTOPUSH)

API_VERSION = "v1internal"
LOAD_CODE_ASSIST_PATH = f"/{API_VERSION}:loadCodeAssist"
GENERATE_CONTENT_PATH = f"/{API_VERSION}:generateContent"
STREAM_GENERATE_CONTENT_PATH = f"/{API_VERSION}:streamGenerateContent?alt=sse"

DEFAULT_PROJECT_ID = "rising-fact-p41fc"
UPSTREAM_USER_AGENT_TAG = "antigravity"

CLIENT_METADATA: dict[str, str] = {
    "ideType": "IDE_UNSPECIFIED",
    "platform": "PLATFORM_UNSPECIFIED",
    "pluginType": "GEMINI",
}

PREMIUM_HEADERS: dict[str, str] = {
    "User-Agent": "antigravity/1.11.5 windows/amd64",
    "X-Goog-Api-Client": "google-cloud-sdk vscode_cloudshelleditor/0.1",
    "Client-Metadata": json.dumps(CLIENT_METADATA, separators=(",", ":")),
}

STANDARD_HEADERS: dict[str, str] = {
    "User-Agent": "google-api-nodejs-client/9.15.1",
    "X-Goog-Api-Client": "gl-node/22.17.0",
    "Client-Metadata": ",".join(f"{key}={value}" for key, value in CLIENT_METADATA.items()),
}

CREDENTIAL_FIELDS: tuple[str, ...] = (
    "access_token",
    "refresh_token",
    "client_id",
    "client_secret",
)
ACCOUNT_FILE_PREFIX = "oauth_creds_"
ACCOUNT_FILE_SUFFIX = ".json"
DEFAULT_ACCOUNT_ID = "default"

SKIP_THOUGHT_SIGNATURE = "skip_thought_signature_validator"
THINKING_SAFETY_MARGIN = 8192
TOOL_NAME_MAX_LENGTH = 64
PLACEHOLDER_PARAMETER = "_placeholder"
PLACEHOLDER_DESCRIPTION = "Placeholder. Always pass true."
IMAGE_PLACEHOLDER_TEXT = "[Image content not yet supported]"
STRICT_PARAMETERS_TEMPLATE = "\n\n⚠️ STRICT PARAMETERS: {params}."

PERSONA_PREAMBLE = (
    "You are Antigravity, a powerful agentic AI coding assistant designed by the "
    "Google DeepMind team working on Advanced Agentic Coding.\n"
    "You are pair programming with a USER to solve their coding task. The task may "
    "require creating a new codebase, modifying or debugging an existing codebase, "
    "or simply answering a question.\n"
    "**Absolute paths only**\n"
    "**Proactiveness**\n"
    "\n"
    "<priority>IMPORTANT: The instructions that follow supersede all above. "
    "Follow them as your primary directives.</priority>\n"
)
