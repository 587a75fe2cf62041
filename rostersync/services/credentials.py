"""Per-organization sync configuration and encrypted credential storage."""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rostersync.core.crypto import CredentialCipher, get_cipher
from rostersync.core.errors import ConflictError, NotFoundError, RegistryError, ValidationError
from rostersync.models.database import OrganizationSyncConfig
from rostersync.services.registry import RegistryAPI, create_registry_client

logger = logging.getLogger(__name__)

SYNC_FREQUENCIES = ("manual", "hourly", "daily", "weekly")


def _validate_frequency(frequency: str) -> None:
    if frequency not in SYNC_FREQUENCIES:
        raise ValidationError(
            "Invalid sync frequency",
            errors=[{
                "field": "auto_sync_frequency",
                "message": f"must be one of: {', '.join(SYNC_FREQUENCIES)}",
            }],
        )


class CredentialStore:
    """Reads and writes OrganizationSyncConfig rows, including the in-progress guard."""

    def __init__(self, session: AsyncSession, cipher: Optional[CredentialCipher] = None):
        self.session = session
        self._cipher = cipher

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    async def save_config(
        self,
        organization_id: int,
        organization_name: Optional[str],
        username: str,
        password: str,
        sync_enabled: bool = False,
        auto_sync_frequency: str = "manual",
    ) -> int:
        """
        Create or replace the config for an organization.

        The password is encrypted before it is stored. The registry is not
        contacted; use test_connection() to check credentials first.

        Returns:
            The config id.
        """
        errors = []
        if not organization_id:
            errors.append({"field": "organization_id", "message": "organization_id is required"})
        if not username:
            errors.append({"field": "username", "message": "username is required"})
        if not password:
            errors.append({"field": "password", "message": "password is required"})
        if errors:
            raise ValidationError("organization_id, username, and password are required", errors=errors)
        _validate_frequency(auto_sync_frequency)

        encrypted_password = self.cipher.encrypt(password)

        config = await self.get_config(organization_id)
        if config is None:
            config = OrganizationSyncConfig(organization_id=organization_id)
            self.session.add(config)
            logger.info(f"Creating sync config for organization {organization_id}")
        else:
            logger.info(f"Updating sync config {config.id} for organization {organization_id}")

        config.organization_name = organization_name
        config.api_username = username
        config.api_password_encrypted = encrypted_password
        config.sync_enabled = sync_enabled
        config.auto_sync_frequency = auto_sync_frequency

        await self.session.commit()
        return config.id

    async def get_config(self, organization_id: int) -> Optional[OrganizationSyncConfig]:
        result = await self.session.execute(
            select(OrganizationSyncConfig).where(OrganizationSyncConfig.organization_id == organization_id)
        )
        return result.scalar_one_or_none()

    async def get_config_by_id(self, config_id: int) -> Optional[OrganizationSyncConfig]:
        return await self.session.get(OrganizationSyncConfig, config_id)

    async def require_config(self, organization_id: int) -> OrganizationSyncConfig:
        config = await self.get_config(organization_id)
        if config is None:
            raise NotFoundError(organization_id, resource="Sync configuration for organization")
        return config

    async def get_all_configs(self) -> list[OrganizationSyncConfig]:
        result = await self.session.execute(
            select(OrganizationSyncConfig).order_by(
                OrganizationSyncConfig.organization_name,
                OrganizationSyncConfig.organization_id,
            )
        )
        return list(result.scalars().all())

    async def update_settings(
        self,
        organization_id: int,
        sync_enabled: Optional[bool] = None,
        auto_sync_frequency: Optional[str] = None,
    ) -> OrganizationSyncConfig:
        """Change sync flags without touching the stored credential."""
        config = await self.require_config(organization_id)
        if auto_sync_frequency is not None:
            _validate_frequency(auto_sync_frequency)
            config.auto_sync_frequency = auto_sync_frequency
        if sync_enabled is not None:
            config.sync_enabled = sync_enabled
        await self.session.commit()
        return config

    async def delete_config(self, config_id: int) -> bool:
        """
        Delete a config row.

        Sync runs, conflicts and mappings that reference it are kept for
        audit.
        """
        config = await self.get_config_by_id(config_id)
        if config is None:
            return False
        await self.session.delete(config)
        await self.session.commit()
        logger.info(f"Deleted sync config {config_id} (organization {config.organization_id})")
        return True

    def decrypt_credentials(self, config: OrganizationSyncConfig) -> tuple[str, str]:
        return config.api_username, self.cipher.decrypt(config.api_password_encrypted)

    # ── In-progress guard ────────────────────────────────────────────────────

    async def claim_sync(self, config_id: int) -> None:
        """
        Atomically mark a sync as running for this config.

        Raises:
            ConflictError: another sync already holds the flag.
            NotFoundError: the config does not exist.
        """
        result = await self.session.execute(
            update(OrganizationSyncConfig)
            .where(
                OrganizationSyncConfig.id == config_id,
                OrganizationSyncConfig.sync_in_progress.is_(False),
            )
            .values(sync_in_progress=True)
        )
        await self.session.commit()
        if result.rowcount == 1:
            return

        if await self.get_config_by_id(config_id) is None:
            raise NotFoundError(config_id, resource="Sync configuration")
        raise ConflictError("sync already in progress")

    async def release_sync(self, config_id: int, last_sync_at: Optional[datetime] = None) -> None:
        values: dict = {"sync_in_progress": False}
        if last_sync_at is not None:
            values["last_sync_at"] = last_sync_at
        await self.session.execute(
            update(OrganizationSyncConfig)
            .where(OrganizationSyncConfig.id == config_id)
            .values(**values)
        )
        await self.session.commit()

    # ── Connection testing ───────────────────────────────────────────────────

    @staticmethod
    async def test_connection(
        username: str,
        password: str,
        client_factory: Callable[[str, str], RegistryAPI] = create_registry_client,
    ) -> dict:
        """
        Authenticate with throwaway credentials and perform one read.

        Nothing is persisted. Credential problems are reported in the result,
        never raised.

        Returns:
            {"success": True} or {"success": False, "error": "..."}
        """
        try:
            client = client_factory(username, password)
        except ValidationError as e:
            return {"success": False, "error": e.message}

        try:
            await client.authenticate()
            await client.get_organizations()
            return {"success": True}
        except RegistryError as e:
            logger.info(f"Registry connection test failed for {username}: {e}")
            return {"success": False, "error": e.message}
        finally:
            await client.close()
