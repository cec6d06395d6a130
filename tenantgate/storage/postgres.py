from __future__ import annotations

import base64
import hashlib
import uuid
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

from cryptography.fernet import Fernet, InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantgate.logging import get_logger
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    INVITATION_ACCEPTED,
    INVITATION_CANCELED,
    INVITATION_EXPIRED,
    INVITATION_PENDING,
    Invitation,
    Member,
    Organization,
    Session,
    TwoFactorCredential,
    User,
    ensure_aware,
    normalize_email,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        image TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        banned BOOLEAN NOT NULL DEFAULT FALSE,
        ban_reason TEXT,
        ban_expires_at TIMESTAMPTZ,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_addr TEXT,
        impersonated_by TEXT,
        active_organization_id TEXT,
        two_factor_pending BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS organization (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        logo TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organization_member (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL REFERENCES organization(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (organization_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organization_invitation (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL REFERENCES organization(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        role TEXT NOT NULL,
        inviter_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS organization_invitation_pending_idx
    ON organization_invitation (organization_id, email) WHERE status = 'pending'
    """,
    """
    CREATE TABLE IF NOT EXISTS two_factor_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        pending_since TIMESTAMPTZ,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        last_verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_USER_SORT_COLUMNS = {"created_at": "created_at", "email": "email", "name": "name"}


class PostgresStore:
    """Postgres-backed store; each atomic operation runs in one transaction."""

    def __init__(self, dsn: str, *, secret_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = Fernet(self._derive_cipher_key(secret_key))
        self._ensure_schema()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name") or "",
            email_verified=bool(row.get("email_verified", False)),
            image=row.get("image"),
            role=row.get("role", "user"),
            banned=bool(row.get("banned", False)),
            ban_reason=row.get("ban_reason"),
            ban_expires_at=ensure_aware(row.get("ban_expires_at")),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            updated_at=ensure_aware(row.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            created_at=ensure_aware(row["created_at"]),
            expires_at=ensure_aware(row["expires_at"]),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            impersonated_by=row.get("impersonated_by"),
            active_organization_id=row.get("active_organization_id"),
            two_factor_pending=bool(row.get("two_factor_pending", False)),
            revoked_at=ensure_aware(row.get("revoked_at")),
        )

    @staticmethod
    def _row_to_organization(row: dict) -> Organization:
        return Organization(
            id=str(row["id"]),
            name=row["name"],
            slug=row["slug"],
            logo=row.get("logo"),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _row_to_member(row: dict) -> Member:
        return Member(
            id=str(row["id"]),
            organization_id=str(row["organization_id"]),
            user_id=str(row["user_id"]),
            role=row["role"],
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _row_to_invitation(row: dict) -> Invitation:
        return Invitation(
            id=str(row["id"]),
            organization_id=str(row["organization_id"]),
            email=row["email"],
            role=row["role"],
            inviter_id=str(row["inviter_id"]),
            expires_at=ensure_aware(row["expires_at"]),
            status=row.get("status", INVITATION_PENDING),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            updated_at=ensure_aware(row.get("updated_at")) or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        name: str = "",
        *,
        role: str = "user",
        image: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        now = utcnow()
        user = User(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            name=name,
            role=role,
            image=image,
            email_verified=email_verified,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, email_verified, image, role, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.email_verified,
                        user.image,
                        user.role,
                        now,
                        now,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email", "reason": "email_taken"}
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(
        self,
        *,
        search: Optional[str] = None,
        role: Optional[str] = None,
        sort_by: str = "created_at",
        sort_direction: str = "desc",
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[User], int]:
        clauses: list[str] = []
        params: list[Any] = []
        if role:
            clauses.append("role = %s")
            params.append(role)
        if search and search.strip():
            pattern = f"%{search.strip().lower()}%"
            clauses.append("(email LIKE %s OR lower(name) LIKE %s)")
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        column = _USER_SORT_COLUMNS.get(sort_by, "created_at")
        direction = "ASC" if sort_direction == "asc" else "DESC"
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM app_user {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM app_user {where} ORDER BY {column} {direction}, id LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        return [self._row_to_user(r) for r in rows], int(total_row["total"]) if total_row else 0

    def _update_user(self, user_id: str, assignments: str, params: Sequence[Any]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, "role = %s", (role,))

    def update_user_profile(
        self, user_id: str, *, name: Optional[str] = None, image: Optional[str] = None
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            "name = COALESCE(%s, name), image = COALESCE(%s, image)",
            (name, image),
        )

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, "email_verified = TRUE", ())

    def ban_user(
        self,
        user_id: str,
        *,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[User, int]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not row:
                raise ConstraintViolation("user not found", {"reason": "not_found"})
            if self._row_to_user(row).is_banned(now):
                raise ConstraintViolation("user already banned", {"reason": "already_banned"})
            updated = conn.execute(
                """
                UPDATE app_user SET banned = TRUE, ban_reason = %s, ban_expires_at = %s, updated_at = %s
                WHERE id = %s RETURNING *
                """,
                (reason, expires_at, now, user_id),
            ).fetchone()
            revoked = conn.execute(
                "UPDATE auth_session SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (now, user_id),
            )
        return self._row_to_user(updated), revoked.rowcount

    def unban_user(self, user_id: str) -> Optional[User]:
        return self._update_user(
            user_id, "banned = FALSE, ban_reason = NULL, ban_expires_at = NULL", ()
        )

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT email FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not row:
                return False
            owned = conn.execute(
                """
                SELECT organization_id FROM organization_member
                WHERE user_id = %s AND role = 'owner'
                FOR UPDATE
                """,
                (user_id,),
            ).fetchall()
            sole_owned = []
            for entry in owned:
                count_row = conn.execute(
                    "SELECT count(*) AS owners FROM organization_member WHERE organization_id = %s AND role = 'owner'",
                    (entry["organization_id"],),
                ).fetchone()
                if int(count_row["owners"]) <= 1:
                    sole_owned.append(str(entry["organization_id"]))
            if sole_owned:
                raise ConstraintViolation(
                    "user is the last owner of an organization",
                    {"reason": "last_owner", "organization_ids": sole_owned},
                )
            conn.execute(
                """
                UPDATE organization_invitation SET status = %s, updated_at = now()
                WHERE email = %s AND status = %s
                """,
                (INVITATION_CANCELED, row["email"], INVITATION_PENDING),
            )
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def create_session(
        self,
        user_id: str,
        *,
        ttl_minutes: int = 60 * 24 * 7,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        impersonated_by: Optional[str] = None,
        two_factor_pending: bool = False,
        active_organization_id: Optional[str] = None,
    ) -> Session:
        sess = Session.new(
            user_id,
            ttl_minutes,
            user_agent,
            ip_addr,
            impersonated_by=impersonated_by,
            two_factor_pending=two_factor_pending,
        )
        sess.active_organization_id = active_organization_id
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, token, created_at, expires_at, user_agent, ip_addr,
                                              impersonated_by, active_organization_id, two_factor_pending)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.token,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                        impersonated_by,
                        active_organization_id,
                        two_factor_pending,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def revoke_session(self, token: str, *, now: Optional[datetime] = None) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE token = %s AND revoked_at IS NULL
                RETURNING *
                """,
                (now or utcnow(), token),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        before: Optional[datetime] = None,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utcnow()
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE user_id = %s AND revoked_at IS NULL AND created_at <= %s
                  AND (%s::text IS NULL OR id <> %s)
                """,
                (now, user_id, before or now, except_session_id, except_session_id),
            )
            return result.rowcount

    def mark_session_verified(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET two_factor_pending = FALSE WHERE id = %s",
                (session_id,),
            )

    def set_active_organization(
        self, session_id: str, organization_id: Optional[str]
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_session SET active_organization_id = %s WHERE id = %s RETURNING *",
                (organization_id, session_id),
            ).fetchone()
        return self._row_to_session(row) if row else None

    # organizations
    def create_organization(
        self,
        name: str,
        slug: str,
        owner_user_id: str,
        *,
        logo: Optional[str] = None,
    ) -> Tuple[Organization, Member]:
        now = utcnow()
        org = Organization(id=str(uuid.uuid4()), name=name, slug=slug, logo=logo, created_at=now)
        member = Member(
            id=str(uuid.uuid4()),
            organization_id=org.id,
            user_id=owner_user_id,
            role="owner",
            created_at=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO organization (id, name, slug, logo, created_at) VALUES (%s, %s, %s, %s, %s)",
                    (org.id, name, slug, logo, now),
                )
                conn.execute(
                    """
                    INSERT INTO organization_member (id, organization_id, user_id, role, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (member.id, org.id, owner_user_id, "owner", now),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "slug already exists", {"field": "slug", "reason": "slug_taken"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": owner_user_id})
        return org, member

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = %s", (organization_id,)
            ).fetchone()
        return self._row_to_organization(row) if row else None

    def get_organization_by_slug(self, slug: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE slug = %s", (slug,)
            ).fetchone()
        return self._row_to_organization(row) if row else None

    def update_organization(
        self, organization_id: str, *, name: Optional[str] = None, logo: Optional[str] = None
    ) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE organization SET name = COALESCE(%s, name), logo = COALESCE(%s, logo)
                WHERE id = %s RETURNING *
                """,
                (name, logo, organization_id),
            ).fetchone()
        return self._row_to_organization(row) if row else None

    def list_user_organizations(self, user_id: str) -> List[Tuple[Organization, Member]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT o.id, o.name, o.slug, o.logo, o.created_at,
                       m.id AS member_id, m.role, m.created_at AS joined_at
                FROM organization_member m JOIN organization o ON o.id = m.organization_id
                WHERE m.user_id = %s
                ORDER BY m.created_at
                """,
                (user_id,),
            ).fetchall()
        return [
            (
                self._row_to_organization(row),
                Member(
                    id=str(row["member_id"]),
                    organization_id=str(row["id"]),
                    user_id=user_id,
                    role=row["role"],
                    created_at=ensure_aware(row["joined_at"]),
                ),
            )
            for row in rows
        ]

    def get_member(self, organization_id: str, user_id: str) -> Optional[Member]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization_member WHERE organization_id = %s AND user_id = %s",
                (organization_id, user_id),
            ).fetchone()
        return self._row_to_member(row) if row else None

    def get_member_by_id(self, member_id: str) -> Optional[Member]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization_member WHERE id = %s", (member_id,)
            ).fetchone()
        return self._row_to_member(row) if row else None

    def list_members(self, organization_id: str) -> List[Member]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM organization_member WHERE organization_id = %s ORDER BY created_at",
                (organization_id,),
            ).fetchall()
        return [self._row_to_member(r) for r in rows]

    @staticmethod
    def _lock_owners(conn, organization_id: str) -> int:
        # Locking every owner row serializes concurrent removals and demotions
        rows = conn.execute(
            """
            SELECT id FROM organization_member
            WHERE organization_id = %s AND role = 'owner'
            FOR UPDATE
            """,
            (organization_id,),
        ).fetchall()
        return len(rows)

    def remove_member(self, organization_id: str, member_id: str) -> Member:
        with self._connect() as conn:
            owners = self._lock_owners(conn, organization_id)
            row = conn.execute(
                "SELECT * FROM organization_member WHERE id = %s AND organization_id = %s FOR UPDATE",
                (member_id, organization_id),
            ).fetchone()
            if not row:
                raise ConstraintViolation("member not found", {"reason": "not_found"})
            member = self._row_to_member(row)
            if member.role == "owner" and owners <= 1:
                raise ConstraintViolation(
                    "organization must keep an owner", {"reason": "last_owner"}
                )
            conn.execute("DELETE FROM organization_member WHERE id = %s", (member_id,))
            conn.execute(
                """
                UPDATE auth_session SET active_organization_id = NULL
                WHERE user_id = %s AND active_organization_id = %s
                """,
                (member.user_id, organization_id),
            )
        return member

    def update_member_role(self, organization_id: str, member_id: str, role: str) -> Member:
        with self._connect() as conn:
            owners = self._lock_owners(conn, organization_id)
            row = conn.execute(
                "SELECT * FROM organization_member WHERE id = %s AND organization_id = %s FOR UPDATE",
                (member_id, organization_id),
            ).fetchone()
            if not row:
                raise ConstraintViolation("member not found", {"reason": "not_found"})
            if row["role"] == "owner" and role != "owner" and owners <= 1:
                raise ConstraintViolation(
                    "organization must keep an owner", {"reason": "last_owner"}
                )
            updated = conn.execute(
                "UPDATE organization_member SET role = %s WHERE id = %s RETURNING *",
                (role, member_id),
            ).fetchone()
        return self._row_to_member(updated)

    # invitations
    def create_invitation(
        self,
        organization_id: str,
        email: str,
        role: str,
        inviter_id: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> Invitation:
        now = now or utcnow()
        normalized = normalize_email(email)
        invitation = Invitation(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            email=normalized,
            role=role,
            inviter_id=inviter_id,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._connect() as conn:
                org = conn.execute(
                    "SELECT id FROM organization WHERE id = %s FOR UPDATE", (organization_id,)
                ).fetchone()
                if not org:
                    raise ConstraintViolation("organization not found", {"reason": "not_found"})
                conn.execute(
                    """
                    UPDATE organization_invitation SET status = %s, updated_at = %s
                    WHERE organization_id = %s AND status = %s AND expires_at < %s
                    """,
                    (INVITATION_EXPIRED, now, organization_id, INVITATION_PENDING, now),
                )
                member = conn.execute(
                    """
                    SELECT m.id FROM organization_member m JOIN app_user u ON u.id = m.user_id
                    WHERE m.organization_id = %s AND u.email = %s
                    """,
                    (organization_id, normalized),
                ).fetchone()
                if member:
                    raise ConstraintViolation("already a member", {"reason": "already_member"})
                conn.execute(
                    """
                    INSERT INTO organization_invitation
                        (id, organization_id, email, role, inviter_id, status, expires_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        invitation.id,
                        organization_id,
                        normalized,
                        role,
                        inviter_id,
                        INVITATION_PENDING,
                        expires_at,
                        now,
                        now,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("pending invitation exists", {"reason": "already_invited"})
        return invitation

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization_invitation WHERE id = %s", (invitation_id,)
            ).fetchone()
        return self._row_to_invitation(row) if row else None

    def list_invitations(self, organization_id: str) -> List[Invitation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM organization_invitation WHERE organization_id = %s
                ORDER BY created_at DESC
                """,
                (organization_id,),
            ).fetchall()
        return [self._row_to_invitation(r) for r in rows]

    def list_invitations_for_email(
        self, email: str, *, statuses: Sequence[str] = (INVITATION_PENDING,)
    ) -> List[Invitation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM organization_invitation
                WHERE email = %s AND status = ANY(%s)
                ORDER BY created_at DESC
                """,
                (normalize_email(email), list(statuses)),
            ).fetchall()
        return [self._row_to_invitation(r) for r in rows]

    def transition_invitation(
        self,
        invitation_id: str,
        expected_status: str,
        new_status: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE organization_invitation SET status = %s, updated_at = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (new_status, now or utcnow(), invitation_id, expected_status),
            ).fetchone()
        return self._row_to_invitation(row) if row else None

    def accept_invitation(
        self, invitation_id: str, user_id: str, *, now: Optional[datetime] = None
    ) -> Tuple[Invitation, Member]:
        now = now or utcnow()
        expired = False
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization_invitation WHERE id = %s FOR UPDATE",
                (invitation_id,),
            ).fetchone()
            if not row:
                raise ConstraintViolation("invitation not found", {"reason": "not_found"})
            invitation = self._row_to_invitation(row)
            if invitation.status != INVITATION_PENDING:
                raise ConstraintViolation(
                    "invitation is not pending",
                    {"reason": "invalid_state", "status": invitation.status},
                )
            if invitation.is_past_due(now):
                conn.execute(
                    "UPDATE organization_invitation SET status = %s, updated_at = %s WHERE id = %s",
                    (INVITATION_EXPIRED, now, invitation_id),
                )
                expired = True
            else:
                existing = conn.execute(
                    "SELECT id FROM organization_member WHERE organization_id = %s AND user_id = %s",
                    (invitation.organization_id, user_id),
                ).fetchone()
                if existing:
                    raise ConstraintViolation("already a member", {"reason": "already_member"})
                member = Member(
                    id=str(uuid.uuid4()),
                    organization_id=invitation.organization_id,
                    user_id=user_id,
                    role=invitation.role,
                    created_at=now,
                )
                conn.execute(
                    """
                    INSERT INTO organization_member (id, organization_id, user_id, role, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (member.id, member.organization_id, user_id, member.role, now),
                )
                conn.execute(
                    "UPDATE organization_invitation SET status = %s, updated_at = %s WHERE id = %s",
                    (INVITATION_ACCEPTED, now, invitation_id),
                )
        # Raised after the block so the expiry transition commits
        if expired:
            raise ConstraintViolation("invitation expired", {"reason": "expired"})
        invitation.status = INVITATION_ACCEPTED
        invitation.updated_at = now
        return invitation, member

    def expire_invitations(self, *, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE organization_invitation SET status = %s, updated_at = %s
                WHERE status = %s AND expires_at < %s
                """,
                (INVITATION_EXPIRED, now, INVITATION_PENDING, now),
            )
            return result.rowcount

    # two-factor
    def _decrypt_secret(self, secret: str) -> str:
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("two_factor_secret_decrypt_failed")
            raise

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return TwoFactorCredential(
            user_id=str(row["user_id"]),
            secret=self._decrypt_secret(row["secret"]),
            enabled=bool(row.get("enabled", False)),
            pending_since=ensure_aware(row.get("pending_since")),
            failed_attempts=int(row.get("failed_attempts") or 0),
            last_verified_at=ensure_aware(row.get("last_verified_at")),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
        )

    def save_two_factor(self, credential: TwoFactorCredential) -> TwoFactorCredential:
        encrypted = self._cipher.encrypt(credential.secret.encode()).decode()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO two_factor_credential
                        (user_id, secret, enabled, pending_since, failed_attempts, last_verified_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret,
                        enabled = EXCLUDED.enabled,
                        pending_since = EXCLUDED.pending_since,
                        failed_attempts = EXCLUDED.failed_attempts,
                        last_verified_at = EXCLUDED.last_verified_at
                    """,
                    (
                        credential.user_id,
                        encrypted,
                        credential.enabled,
                        credential.pending_since,
                        credential.failed_attempts,
                        credential.last_verified_at,
                        credential.created_at,
                    ),
                )
                conn.execute(
                    "UPDATE app_user SET two_factor_enabled = %s, updated_at = now() WHERE id = %s",
                    (credential.enabled, credential.user_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for two-factor", {"user_id": credential.user_id}
            )
        return credential

    def delete_two_factor(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM two_factor_credential WHERE user_id = %s", (user_id,)
            )
            conn.execute(
                "UPDATE app_user SET two_factor_enabled = FALSE, updated_at = now() WHERE id = %s",
                (user_id,),
            )
            return result.rowcount > 0

    def register_two_factor_failure(self, user_id: str, max_failures: int) -> Tuple[int, bool]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_credential SET failed_attempts = failed_attempts + 1
                WHERE user_id = %s AND enabled = FALSE
                RETURNING failed_attempts
                """,
                (user_id,),
            ).fetchone()
            if not row:
                return 0, False
            attempts = int(row["failed_attempts"])
            invalidated = attempts >= max_failures
            if invalidated:
                conn.execute(
                    "DELETE FROM two_factor_credential WHERE user_id = %s AND enabled = FALSE",
                    (user_id,),
                )
            return attempts, invalidated

    def mark_two_factor_verified(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE two_factor_credential SET last_verified_at = %s WHERE user_id = %s",
                (at or utcnow(), user_id),
            )
