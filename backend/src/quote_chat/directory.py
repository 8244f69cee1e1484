"""Read-only lookups into the quote, organization, profile and membership data.

These tables belong to the wider platform; the chat service never writes them.
"""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from sqlalchemy import Column, MetaData, String, Table, create_engine, select

from .models import OrganizationType

ELEVATED_ROLES: frozenset[str] = frozenset({"editor", "admin"})


@dataclass(frozen=True)
class QuoteContext:
    quote_id: str
    title: str | None
    owner_org_id: str
    shipment_id: str | None
    submitted_by: str | None


@dataclass(frozen=True)
class OrganizationRecord:
    org_id: str
    name: str | None
    type: OrganizationType


@dataclass(frozen=True)
class ProfileRecord:
    user_id: str
    full_name: str | None
    default_org_id: str | None


@dataclass(frozen=True)
class MembershipRecord:
    user_id: str
    org_id: str
    role: str

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES


class Directory(Protocol):
    def get_quote_context(self, quote_id: str) -> QuoteContext | None: ...

    def get_organization(self, org_id: str) -> OrganizationRecord | None: ...

    def get_profile(self, user_id: str) -> ProfileRecord | None: ...

    def get_membership(self, user_id: str, org_id: str) -> MembershipRecord | None: ...

    def list_memberships_for_user(self, user_id: str) -> list[MembershipRecord]: ...

    def list_members(self, org_id: str) -> list[MembershipRecord]: ...

    def list_quote_ids_for_organization(self, org_id: str) -> list[str]: ...


def _organization_type(raw: str | None) -> OrganizationType:
    return "partner" if (raw or "").strip().lower() == "partner" else "client"


class InMemoryDirectory:
    def __init__(self) -> None:
        self._lock = Lock()
        self._quotes: dict[str, QuoteContext] = {}
        self._organizations: dict[str, OrganizationRecord] = {}
        self._profiles: dict[str, ProfileRecord] = {}
        self._memberships: dict[tuple[str, str], MembershipRecord] = {}

    def add_quote(
        self,
        quote_id: str,
        *,
        owner_org_id: str,
        title: str | None = None,
        shipment_id: str | None = None,
        submitted_by: str | None = None,
    ) -> QuoteContext:
        record = QuoteContext(
            quote_id=quote_id,
            title=title,
            owner_org_id=owner_org_id,
            shipment_id=shipment_id,
            submitted_by=submitted_by,
        )
        with self._lock:
            self._quotes[quote_id] = record
        return record

    def add_organization(self, org_id: str, *, name: str | None = None, type: str = "client") -> OrganizationRecord:
        record = OrganizationRecord(org_id=org_id, name=name, type=_organization_type(type))
        with self._lock:
            self._organizations[org_id] = record
        return record

    def add_profile(self, user_id: str, *, full_name: str | None = None, default_org_id: str | None = None) -> ProfileRecord:
        record = ProfileRecord(user_id=user_id, full_name=full_name, default_org_id=default_org_id)
        with self._lock:
            self._profiles[user_id] = record
        return record

    def add_membership(self, user_id: str, org_id: str, *, role: str = "viewer") -> MembershipRecord:
        record = MembershipRecord(user_id=user_id, org_id=org_id, role=role)
        with self._lock:
            self._memberships[(user_id, org_id)] = record
        return record

    def get_quote_context(self, quote_id: str) -> QuoteContext | None:
        with self._lock:
            return self._quotes.get(quote_id)

    def get_organization(self, org_id: str) -> OrganizationRecord | None:
        with self._lock:
            return self._organizations.get(org_id)

    def get_profile(self, user_id: str) -> ProfileRecord | None:
        with self._lock:
            return self._profiles.get(user_id)

    def get_membership(self, user_id: str, org_id: str) -> MembershipRecord | None:
        with self._lock:
            return self._memberships.get((user_id, org_id))

    def list_memberships_for_user(self, user_id: str) -> list[MembershipRecord]:
        with self._lock:
            return [value for (member, _), value in self._memberships.items() if member == user_id]

    def list_members(self, org_id: str) -> list[MembershipRecord]:
        with self._lock:
            return [value for (_, org), value in self._memberships.items() if org == org_id]

    def list_quote_ids_for_organization(self, org_id: str) -> list[str]:
        with self._lock:
            return sorted(quote.quote_id for quote in self._quotes.values() if quote.owner_org_id == org_id)


_directory_metadata = MetaData()

quotes_table = Table(
    "quotes",
    _directory_metadata,
    Column("id", String, primary_key=True),
    Column("title", String),
    Column("owner_org_id", String),
    Column("shipment_id", String),
    Column("submitted_by", String),
)

organizations_table = Table(
    "organizations",
    _directory_metadata,
    Column("id", String, primary_key=True),
    Column("name", String),
    Column("type", String),
)

profiles_table = Table(
    "profiles",
    _directory_metadata,
    Column("id", String, primary_key=True),
    Column("full_name", String),
    Column("default_org", String),
)

memberships_table = Table(
    "memberships",
    _directory_metadata,
    Column("user_id", String, primary_key=True),
    Column("org_id", String, primary_key=True),
    Column("role", String),
)


class SqlAlchemyDirectory:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for the SQL directory")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)

    def get_quote_context(self, quote_id: str) -> QuoteContext | None:
        with self._engine.connect() as connection:
            row = connection.execute(select(quotes_table).where(quotes_table.c.id == quote_id)).mappings().first()
        if row is None or not row["owner_org_id"]:
            return None
        return QuoteContext(
            quote_id=row["id"],
            title=row["title"],
            owner_org_id=row["owner_org_id"],
            shipment_id=row["shipment_id"],
            submitted_by=row["submitted_by"],
        )

    def get_organization(self, org_id: str) -> OrganizationRecord | None:
        with self._engine.connect() as connection:
            row = connection.execute(
                select(organizations_table).where(organizations_table.c.id == org_id)
            ).mappings().first()
        if row is None:
            return None
        return OrganizationRecord(org_id=row["id"], name=row["name"], type=_organization_type(row["type"]))

    def get_profile(self, user_id: str) -> ProfileRecord | None:
        with self._engine.connect() as connection:
            row = connection.execute(select(profiles_table).where(profiles_table.c.id == user_id)).mappings().first()
        if row is None:
            return None
        return ProfileRecord(user_id=row["id"], full_name=row["full_name"], default_org_id=row["default_org"])

    def get_membership(self, user_id: str, org_id: str) -> MembershipRecord | None:
        with self._engine.connect() as connection:
            row = connection.execute(
                select(memberships_table)
                .where(memberships_table.c.user_id == user_id)
                .where(memberships_table.c.org_id == org_id)
            ).mappings().first()
        if row is None:
            return None
        return MembershipRecord(user_id=row["user_id"], org_id=row["org_id"], role=row["role"] or "")

    def list_memberships_for_user(self, user_id: str) -> list[MembershipRecord]:
        with self._engine.connect() as connection:
            rows = connection.execute(
                select(memberships_table).where(memberships_table.c.user_id == user_id)
            ).mappings().all()
        return [MembershipRecord(user_id=row["user_id"], org_id=row["org_id"], role=row["role"] or "") for row in rows]

    def list_members(self, org_id: str) -> list[MembershipRecord]:
        with self._engine.connect() as connection:
            rows = connection.execute(
                select(memberships_table).where(memberships_table.c.org_id == org_id)
            ).mappings().all()
        return [MembershipRecord(user_id=row["user_id"], org_id=row["org_id"], role=row["role"] or "") for row in rows]

    def list_quote_ids_for_organization(self, org_id: str) -> list[str]:
        with self._engine.connect() as connection:
            rows = connection.execute(
                select(quotes_table.c.id).where(quotes_table.c.owner_org_id == org_id).order_by(quotes_table.c.id)
            ).all()
        return [row[0] for row in rows]


def create_directory(*, backend: str, database_url: str) -> Directory:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDirectory(database_url)
    if normalized == "inmemory":
        return InMemoryDirectory()
    raise RuntimeError(f"unsupported CHAT_STORE_BACKEND: {backend}")
