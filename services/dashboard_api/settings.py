"""API token and triage threshold settings."""

import logging
from typing import Callable

from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.exceptions import AuthError
from shared.models import TriageSettings
from services.readwise_client.client import ReadwiseClient, create_readwise_client

logger = logging.getLogger(__name__)


class SettingsService:
    """Owns the only copy of the Readwise API token."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        encryption_service: EncryptionService,
        client_factory: Callable[[str], ReadwiseClient] = create_readwise_client
    ):
        self.db_ops = db_ops
        self.encryption_service = encryption_service
        self.client_factory = client_factory

    async def save_api_token(self, api_token: str) -> None:
        """
        Validate a token against Readwise and store it if accepted.

        Raises:
            AuthError: If Readwise rejects the token
        """
        async with self.client_factory(api_token) as client:
            is_valid = await client.validate_token()

        if not is_valid:
            logger.warning("Rejected invalid Readwise API token")
            raise AuthError("Invalid API token")

        self.db_ops.store_api_token(api_token, self.encryption_service)
        logger.info("Readwise API token stored")

    def has_api_token(self) -> bool:
        settings = self.db_ops.get_settings()
        return bool(settings and settings.api_token)

    def delete_api_token(self) -> bool:
        deleted = self.db_ops.delete_api_token()
        if deleted:
            logger.info("Readwise API token removed")
        return deleted

    def get_triage_settings(self) -> TriageSettings:
        return self.db_ops.get_triage_settings()

    def save_triage_settings(self, triage_settings: TriageSettings) -> TriageSettings:
        return self.db_ops.save_triage_settings(triage_settings)
