"""
PostgreSQL persistence layer for the federation engine.
"""

from typing import Any, Dict, List, Optional

import asyncpg

from shared.logging import get_logger
from .models import (
    LocalUser,
    NewFederatedUser,
    OrganisationSettings,
    ProviderCredential,
    RecipientRecord,
)


SETTINGS_COLUMNS = (
    "document_language",
    "document_timezone",
    "document_date_format",
    "document_visibility",
    "typed_signature_enabled",
    "upload_signature_enabled",
    "draw_signature_enabled",
    "include_sender_details",
    "include_signing_certificate",
    "include_audit_log",
    "email_reply_to",
    "branding_enabled",
    "branding_logo",
    "branding_company_details",
    "branding_logo_derived",
)


def _like_pattern(query: str) -> str:
    """Build a case-insensitive substring pattern with LIKE wildcards escaped."""
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _check_settings_columns(changes: Dict[str, Any]) -> None:
    unknown = set(changes) - set(SETTINGS_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown settings columns: {sorted(unknown)}")


class PostgresFederationStore:
    """asyncpg-backed store for credentials, settings and recipient history."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("federation.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and create tables if they don't exist."""
        self.pool = await asyncpg.create_pool(
            self.dsn,
            min_size=2,
            max_size=10,
            command_timeout=30
        )
        await self._create_tables()
        self.logger.info("PostgreSQL persistence started")

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def ping(self) -> bool:
        if not self.pool:
            return False
        async with self.pool.acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    email VARCHAR(320) NOT NULL UNIQUE,
                    name VARCHAR(255),
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );

                CREATE TABLE IF NOT EXISTS provider_credentials (
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    provider VARCHAR(64) NOT NULL,
                    provider_account_id VARCHAR(255),
                    access_token TEXT NOT NULL,
                    refresh_token TEXT,
                    expires_at BIGINT NOT NULL DEFAULT 0,
                    token_type VARCHAR(32) NOT NULL DEFAULT 'Bearer',
                    PRIMARY KEY (user_id, provider)
                );

                CREATE TABLE IF NOT EXISTS organisations (
                    id SERIAL PRIMARY KEY,
                    name VARCHAR(255) NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );

                CREATE TABLE IF NOT EXISTS organisation_members (
                    organisation_id INTEGER NOT NULL REFERENCES organisations(id) ON DELETE CASCADE,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (organisation_id, user_id)
                );

                CREATE TABLE IF NOT EXISTS organisation_settings (
                    organisation_id INTEGER PRIMARY KEY REFERENCES organisations(id) ON DELETE CASCADE,
                    document_language VARCHAR(16),
                    document_timezone VARCHAR(64),
                    document_date_format VARCHAR(64),
                    document_visibility VARCHAR(32),
                    typed_signature_enabled BOOLEAN,
                    upload_signature_enabled BOOLEAN,
                    draw_signature_enabled BOOLEAN,
                    include_sender_details BOOLEAN,
                    include_signing_certificate BOOLEAN,
                    include_audit_log BOOLEAN,
                    email_reply_to VARCHAR(320),
                    branding_enabled BOOLEAN,
                    branding_logo TEXT,
                    branding_company_details TEXT,
                    branding_logo_derived BOOLEAN NOT NULL DEFAULT FALSE
                );

                CREATE TABLE IF NOT EXISTS teams (
                    id SERIAL PRIMARY KEY,
                    organisation_id INTEGER NOT NULL REFERENCES organisations(id) ON DELETE CASCADE,
                    name VARCHAR(255) NOT NULL
                );

                CREATE TABLE IF NOT EXISTS team_members (
                    team_id INTEGER NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    PRIMARY KEY (team_id, user_id)
                );

                CREATE TABLE IF NOT EXISTS documents (
                    id SERIAL PRIMARY KEY,
                    team_id INTEGER NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );

                CREATE TABLE IF NOT EXISTS recipients (
                    id SERIAL PRIMARY KEY,
                    document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
                    name VARCHAR(255),
                    email VARCHAR(320) NOT NULL
                );
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_members_user ON organisation_members(user_id);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_documents_team_created ON documents(team_id, created_at DESC);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_recipients_document ON recipients(document_id);
            """)

    # Credentials

    async def get_credential(self, user_id: int, provider: str) -> Optional[ProviderCredential]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT user_id, provider, provider_account_id, access_token, refresh_token, expires_at
                FROM provider_credentials
                WHERE user_id = $1 AND provider = $2
            """, user_id, provider)

        if not row:
            return None

        return ProviderCredential(
            user_id=row["user_id"],
            provider=row["provider"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"] or 0,
            provider_account_id=row["provider_account_id"],
        )

    async def link_credential(self, credential: ProviderCredential) -> bool:
        """Link a provider account to a user unless a link already exists."""
        async with self.pool.acquire() as conn:
            status = await conn.execute("""
                INSERT INTO provider_credentials (
                    user_id, provider, provider_account_id, access_token, refresh_token, expires_at
                ) VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (user_id, provider) DO NOTHING
            """,
                credential.user_id, credential.provider, credential.provider_account_id,
                credential.access_token, credential.refresh_token, credential.expires_at
            )

        linked = status.endswith(" 1")
        if linked:
            self.logger.info("Provider account linked", user_id=credential.user_id,
                             provider=credential.provider)
        return linked

    async def save_refreshed_credential(self, user_id: int, provider: str, access_token: str,
                                        expires_at: int, refresh_token: Optional[str] = None) -> bool:
        """Persist a refresh result in one statement.

        The refresh token is only replaced when the provider rotated it, and
        the row is left alone if a concurrent refresh already stored a later
        expiry.
        """
        async with self.pool.acquire() as conn:
            status = await conn.execute("""
                UPDATE provider_credentials
                SET access_token = $3,
                    expires_at = $4,
                    refresh_token = COALESCE($5, refresh_token)
                WHERE user_id = $1 AND provider = $2 AND expires_at <= $4
            """, user_id, provider, access_token, expires_at, refresh_token)

        return status.endswith(" 1")

    # Users and organisations

    async def find_user_by_email(self, email: str) -> Optional[LocalUser]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT id, email, name FROM users WHERE lower(email) = lower($1)
            """, email)

        if not row:
            return None
        return LocalUser(id=row["id"], email=row["email"], name=row["name"])

    async def create_federated_user(self, new_user: NewFederatedUser) -> LocalUser:
        """Create user, credential link, organisation, membership and settings atomically."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                user_row = await conn.fetchrow("""
                    INSERT INTO users (email, name) VALUES ($1, $2)
                    RETURNING id, email, name
                """, new_user.email.lower(), new_user.name)

                await conn.execute("""
                    INSERT INTO provider_credentials (
                        user_id, provider, provider_account_id, access_token, expires_at
                    ) VALUES ($1, $2, $3, $4, $5)
                """,
                    user_row["id"], new_user.provider, new_user.provider_account_id,
                    new_user.access_token, new_user.expires_at
                )

                organisation_id = await conn.fetchval("""
                    INSERT INTO organisations (name) VALUES ($1) RETURNING id
                """, new_user.organisation_name)

                await conn.execute("""
                    INSERT INTO organisation_members (organisation_id, user_id) VALUES ($1, $2)
                """, organisation_id, user_row["id"])

                await conn.execute("""
                    INSERT INTO organisation_settings (organisation_id) VALUES ($1)
                """, organisation_id)

                team_id = await conn.fetchval("""
                    INSERT INTO teams (organisation_id, name) VALUES ($1, $2) RETURNING id
                """, organisation_id, new_user.organisation_name)

                await conn.execute("""
                    INSERT INTO team_members (team_id, user_id) VALUES ($1, $2)
                """, team_id, user_row["id"])

        self.logger.info("Federated user provisioned", user_id=user_row["id"],
                         organisation_id=organisation_id)
        return LocalUser(id=user_row["id"], email=user_row["email"], name=user_row["name"])

    async def get_organisation_settings_for_user(self, user_id: int) -> Optional[OrganisationSettings]:
        """Return the settings of the user's (first) organisation membership."""
        async with self.pool.acquire() as conn:
            return await self._fetch_settings(conn, user_id)

    async def _fetch_settings(self, conn, user_id: int, *,
                              for_update: bool = False) -> Optional[OrganisationSettings]:
        row = await conn.fetchrow(f"""
            SELECT s.organisation_id, {", ".join("s." + column for column in SETTINGS_COLUMNS)}
            FROM organisation_members m
            JOIN organisation_settings s ON s.organisation_id = m.organisation_id
            WHERE m.user_id = $1
            ORDER BY m.created_at ASC
            LIMIT 1
            {"FOR UPDATE OF s" if for_update else ""}
        """, user_id)

        if not row:
            return None
        return OrganisationSettings.from_row(dict(row))

    async def update_organisation_settings(self, organisation_id: int, changes: Dict[str, Any]) -> bool:
        """Apply ``changes`` to one settings row in a single UPDATE."""
        _check_settings_columns(changes)
        if not changes:
            return True

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                updated = await self._update_settings(conn, organisation_id, changes)
        return updated

    async def _update_settings(self, conn, organisation_id: int, changes: Dict[str, Any]) -> bool:
        columns = list(changes)
        assignments = ", ".join(f"{column} = ${index + 2}" for index, column in enumerate(columns))
        values = [
            value.value if hasattr(value, "value") else value
            for value in (changes[column] for column in columns)
        ]
        status = await conn.execute(
            f"UPDATE organisation_settings SET {assignments} WHERE organisation_id = $1",
            organisation_id, *values
        )

        updated = status.endswith(" 1")
        self.logger.info("Organisation settings updated", organisation_id=organisation_id,
                         fields=columns, updated=updated)
        return updated

    async def apply_settings_patch(self, user_id: int,
                                   changes: Dict[str, Any]) -> Optional[OrganisationSettings]:
        """Apply a local administrator edit and return the settings as committed."""
        _check_settings_columns(changes)
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await self._fetch_settings(conn, user_id, for_update=True)
                if current is None:
                    return None
                if changes:
                    await self._update_settings(conn, current.organisation_id, changes)

        for column, value in changes.items():
            setattr(current, column, value)
        return current

    # Recipient history

    async def find_recent_recipients(self, user_id: int, team_id: int, query: str,
                                     limit: int) -> List[RecipientRecord]:
        """Distinct recipients of the team's documents, most recent document first."""
        pattern = _like_pattern(query) if query else None
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT name, email FROM (
                    SELECT DISTINCT ON (lower(r.email)) r.name, r.email, d.created_at
                    FROM recipients r
                    JOIN documents d ON d.id = r.document_id
                    WHERE d.team_id = $1
                      AND EXISTS (
                          SELECT 1 FROM team_members tm WHERE tm.team_id = $1 AND tm.user_id = $2
                      )
                      AND r.email <> ''
                      AND ($3::text IS NULL OR r.name ILIKE $3 OR r.email ILIKE $3)
                    ORDER BY lower(r.email), d.created_at DESC
                ) latest
                ORDER BY created_at DESC
                LIMIT $4
            """, team_id, user_id, pattern, limit)

        return [RecipientRecord(email=row["email"], name=row["name"]) for row in rows]

    async def find_team_members(self, user_id: int, team_id: int, query: str,
                                limit: int) -> List[RecipientRecord]:
        """Members of the team other than the caller."""
        pattern = _like_pattern(query) if query else None
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT u.name, u.email
                FROM team_members tm
                JOIN users u ON u.id = tm.user_id
                WHERE tm.team_id = $1
                  AND u.id <> $2
                  AND ($3::text IS NULL OR u.name ILIKE $3 OR u.email ILIKE $3)
                ORDER BY u.name NULLS LAST, u.email
                LIMIT $4
            """, team_id, user_id, pattern, limit)

        return [RecipientRecord(email=row["email"], name=row["name"]) for row in rows]
