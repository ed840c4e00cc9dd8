"""
CRM access token lookup.

The token comes from an environment variable or, failing that, an
optional JSON secrets file ({"crm_access_token": "..."}). It is read at
call time so a rotated token is picked up by the next request.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import SecretStr

from pipelinesync.domain.errors import ConfigurationError
from pipelinesync.infrastructure.config_loader import load_json_file

logger = logging.getLogger(__name__)

SECRETS_FILE_KEY = "crm_access_token"


class TokenStore:
    """Resolves the CRM bearer token."""

    def __init__(self, env_var: str = "CRM_ACCESS_TOKEN", secrets_file: Path | None = None):
        self.env_var = env_var
        self.secrets_file = secrets_file

    def get_token(self) -> SecretStr:
        """
        Return the access token.

        Raises:
            ConfigurationError: If no token is configured anywhere
        """
        value = os.environ.get(self.env_var, "").strip()
        if value:
            return SecretStr(value)

        if self.secrets_file is not None:
            data = load_json_file(self.secrets_file, required=False)
            if data:
                value = str(data.get(SECRETS_FILE_KEY) or "").strip()
                if value:
                    logger.debug("Using CRM token from %s", self.secrets_file)
                    return SecretStr(value)

        raise ConfigurationError(
            f"CRM access token missing: set {self.env_var}"
            + (f" or '{SECRETS_FILE_KEY}' in {self.secrets_file}" if self.secrets_file else "")
        )
