"""Bootstrap the Google Sheets service-account file from an environment variable.

On a PaaS the credential JSON can't be committed to git. Paste it into an
env var instead and it is written to GOOGLE_SHEETS_CREDENTIALS_PATH at
startup:

    GOOGLE_SHEETS_CREDENTIALS_JSON   (explicit)
    GOOGLE_SA_JSON                   (shared service account, fallback)
"""
import json
import os
from typing import Optional

from shipsync.config import get_settings
from shipsync.utils.logger import log

CREDENTIAL_ENV_VARS = ("GOOGLE_SHEETS_CREDENTIALS_JSON", "GOOGLE_SA_JSON")


def _is_json(value: str) -> bool:
    """Check if a string looks like JSON content (not a file path)."""
    stripped = value.strip()
    return stripped.startswith("{") and stripped.endswith("}")


def bootstrap_credentials(file_path: Optional[str] = None) -> Optional[str]:
    """
    Write the credentials file if it is missing and an env var holds the JSON.

    Returns the path written, or None if nothing was written.
    """
    file_path = file_path or get_settings().google_sheets_credentials_path
    if os.path.exists(file_path):
        log.debug(f"Credential file {file_path} already exists, skipping")
        return None

    for var in CREDENTIAL_ENV_VARS:
        value = os.environ.get(var, "")
        if not value or not _is_json(value):
            continue
        try:
            json.loads(value)
        except json.JSONDecodeError:
            log.error(f"{var} is not valid JSON, skipping")
            continue
        directory = os.path.dirname(file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(file_path, "w") as f:
            f.write(value)
        log.info(f"Wrote {file_path} from {var}")
        return file_path

    return None
