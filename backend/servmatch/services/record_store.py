import asyncio
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, TypeVar
from uuid import uuid4

from servmatch.errors import ConflictError, NotFoundError, TransportError
from servmatch.models import (
    Category,
    Conversation,
    Location,
    NotificationRecord,
    Proposal,
    ProviderProfile,
    ServiceRequest,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LocationSource(Protocol):
    async def get_current_location(self) -> Optional[Location]:
        ...


class RecordStore(ABC):
    """Single-record reads and writes against the backing store.

    No method groups writes; callers sequence them and live with partial
    application.
    """

    @abstractmethod
    async def list_categories(self) -> List[Category]: ...

    @abstractmethod
    async def insert_category(self, category: Category) -> Category: ...

    @abstractmethod
    async def get_provider(self, user_id: str) -> Optional[ProviderProfile]: ...

    @abstractmethod
    async def list_providers(self) -> List[ProviderProfile]: ...

    @abstractmethod
    async def list_providers_by_category(self, category_id: str) -> List[ProviderProfile]: ...

    @abstractmethod
    async def upsert_provider(self, provider: ProviderProfile) -> ProviderProfile: ...

    @abstractmethod
    async def get_request(self, request_id: str) -> Optional[ServiceRequest]: ...

    @abstractmethod
    async def list_requests(self, statuses: Optional[Iterable[str]] = None) -> List[ServiceRequest]: ...

    @abstractmethod
    async def insert_request(self, **fields: Any) -> ServiceRequest: ...

    @abstractmethod
    async def update_request_fields(self, request_id: str, fields: Dict[str, Any]) -> ServiceRequest: ...

    @abstractmethod
    async def update_request_status(self, request_id: str, status: str) -> ServiceRequest: ...

    @abstractmethod
    async def get_proposal(self, proposal_id: str) -> Optional[Proposal]: ...

    @abstractmethod
    async def list_proposals(self, request_id: str) -> List[Proposal]: ...

    @abstractmethod
    async def insert_proposal(self, **fields: Any) -> Proposal: ...

    @abstractmethod
    async def update_proposal_status(self, proposal_id: str, status: str) -> Proposal: ...

    @abstractmethod
    async def find_conversation(self, request_id: str, provider_id: str) -> Optional[Conversation]: ...

    @abstractmethod
    async def insert_conversation(self, **fields: Any) -> Conversation: ...

    @abstractmethod
    async def insert_notification(self, **fields: Any) -> NotificationRecord: ...

    @abstractmethod
    async def list_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[NotificationRecord]: ...

    @abstractmethod
    async def mark_notifications_read(self, user_id: str, notification_ids: Optional[Iterable[str]] = None) -> int: ...


class SqliteRecordStore(RecordStore):
    def __init__(self, db_path: str, seed_categories: Iterable[Category] = ()) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_db()
        self._seed_if_needed(list(seed_categories))

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS categories (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        description TEXT NOT NULL DEFAULT '',
                        icon TEXT NOT NULL DEFAULT '',
                        match_radius_km REAL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS providers (
                        user_id TEXT PRIMARY KEY,
                        full_name TEXT NOT NULL,
                        skills_json TEXT NOT NULL DEFAULT '[]',
                        location_json TEXT,
                        rating REAL NOT NULL DEFAULT 0,
                        review_count INTEGER NOT NULL DEFAULT 0,
                        hourly_rate REAL,
                        bio TEXT NOT NULL DEFAULT '',
                        is_verified INTEGER NOT NULL DEFAULT 0
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_requests (
                        id TEXT PRIMARY KEY,
                        buyer_id TEXT NOT NULL,
                        category_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        description TEXT NOT NULL DEFAULT '',
                        budget_min REAL NOT NULL DEFAULT 0,
                        budget_max REAL NOT NULL DEFAULT 0,
                        deadline TEXT,
                        location_json TEXT,
                        status TEXT NOT NULL DEFAULT 'open',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS proposals (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        price REAL NOT NULL,
                        timeline_estimate TEXT NOT NULL DEFAULT '',
                        cover_letter TEXT NOT NULL DEFAULT '',
                        status TEXT NOT NULL DEFAULT 'pending',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        UNIQUE (request_id, provider_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS conversations (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        buyer_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        request_title TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL,
                        UNIQUE (request_id, provider_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS notifications (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        type TEXT NOT NULL,
                        title TEXT NOT NULL,
                        body TEXT NOT NULL,
                        payload_json TEXT NOT NULL DEFAULT '{}',
                        read INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_proposals_request_id ON proposals(request_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_status ON service_requests(status)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user_id ON notifications(user_id)")
                conn.commit()

    def _seed_if_needed(self, categories: List[Category]) -> None:
        if not categories:
            return
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    """
                    INSERT OR IGNORE INTO categories (id, name, description, icon, match_radius_km)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [(c.id, c.name, c.description, c.icon, c.match_radius_km) for c in categories],
                )
                conn.commit()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self._guarded, fn, *args)

    def _guarded(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            with self._lock:
                with self._connect() as conn:
                    return fn(conn, *args)
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Record conflicts with an existing row: {exc}") from exc
        except sqlite3.Error as exc:
            logger.exception("Record store call %s failed", getattr(fn, "__name__", fn))
            raise TransportError(f"Record store unavailable: {exc}") from exc

    # ----- row mapping -------------------------------------------------

    def _safe_json(self, raw_value: Any, default: Any) -> Any:
        if raw_value in (None, ""):
            return default
        if not isinstance(raw_value, str):
            return default
        try:
            parsed = json.loads(raw_value)
        except json.JSONDecodeError:
            return default
        return parsed if isinstance(parsed, type(default)) else default

    def _location_from_json(self, raw_value: Any) -> Optional[Location]:
        data = self._safe_json(raw_value, {})
        return Location(**data) if data else None

    def _location_to_json(self, location: Optional[Location]) -> Optional[str]:
        if location is None:
            return None
        return json.dumps(location.model_dump(exclude_none=True))

    def _row_to_category(self, row: sqlite3.Row) -> Category:
        return Category(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            icon=row["icon"],
            match_radius_km=row["match_radius_km"],
        )

    def _row_to_provider(self, row: sqlite3.Row) -> ProviderProfile:
        return ProviderProfile(
            user_id=row["user_id"],
            full_name=row["full_name"],
            skills=[str(skill) for skill in self._safe_json(row["skills_json"], [])],
            location=self._location_from_json(row["location_json"]),
            rating=float(row["rating"]),
            review_count=int(row["review_count"]),
            hourly_rate=row["hourly_rate"],
            bio=row["bio"],
            is_verified=bool(row["is_verified"]),
        )

    def _row_to_request(self, row: sqlite3.Row) -> ServiceRequest:
        return ServiceRequest(
            id=row["id"],
            buyer_id=row["buyer_id"],
            category_id=row["category_id"],
            title=row["title"],
            description=row["description"],
            budget_min=float(row["budget_min"]),
            budget_max=float(row["budget_max"]),
            deadline=row["deadline"],
            location=self._location_from_json(row["location_json"]),
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_proposal(self, row: sqlite3.Row) -> Proposal:
        return Proposal(
            id=row["id"],
            request_id=row["request_id"],
            provider_id=row["provider_id"],
            price=float(row["price"]),
            timeline_estimate=row["timeline_estimate"],
            cover_letter=row["cover_letter"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_conversation(self, row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            request_id=row["request_id"],
            buyer_id=row["buyer_id"],
            provider_id=row["provider_id"],
            request_title=row["request_title"],
            created_at=row["created_at"],
        )

    def _row_to_notification(self, row: sqlite3.Row) -> NotificationRecord:
        return NotificationRecord(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            title=row["title"],
            body=row["body"],
            payload=self._safe_json(row["payload_json"], {}),
            read=bool(row["read"]),
            created_at=row["created_at"],
        )

    # ----- categories --------------------------------------------------

    async def list_categories(self) -> List[Category]:
        def query(conn: sqlite3.Connection) -> List[Category]:
            rows = conn.execute("SELECT * FROM categories ORDER BY name").fetchall()
            return [self._row_to_category(row) for row in rows]

        return await self._run(query)

    async def insert_category(self, category: Category) -> Category:
        def write(conn: sqlite3.Connection) -> Category:
            conn.execute(
                "INSERT INTO categories (id, name, description, icon, match_radius_km) VALUES (?, ?, ?, ?, ?)",
                (category.id, category.name, category.description, category.icon, category.match_radius_km),
            )
            conn.commit()
            return category

        return await self._run(write)

    # ----- providers ---------------------------------------------------

    async def get_provider(self, user_id: str) -> Optional[ProviderProfile]:
        def query(conn: sqlite3.Connection) -> Optional[ProviderProfile]:
            row = conn.execute("SELECT * FROM providers WHERE user_id = ?", (user_id,)).fetchone()
            return self._row_to_provider(row) if row else None

        return await self._run(query)

    async def list_providers(self) -> List[ProviderProfile]:
        def query(conn: sqlite3.Connection) -> List[ProviderProfile]:
            rows = conn.execute("SELECT * FROM providers ORDER BY user_id").fetchall()
            return [self._row_to_provider(row) for row in rows]

        return await self._run(query)

    async def list_providers_by_category(self, category_id: str) -> List[ProviderProfile]:
        providers = await self.list_providers()
        return [provider for provider in providers if category_id in provider.skills]

    async def upsert_provider(self, provider: ProviderProfile) -> ProviderProfile:
        def write(conn: sqlite3.Connection) -> ProviderProfile:
            conn.execute(
                """
                INSERT INTO providers (user_id, full_name, skills_json, location_json, rating, review_count, hourly_rate, bio, is_verified)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    full_name = excluded.full_name,
                    skills_json = excluded.skills_json,
                    location_json = excluded.location_json,
                    rating = excluded.rating,
                    review_count = excluded.review_count,
                    hourly_rate = excluded.hourly_rate,
                    bio = excluded.bio,
                    is_verified = excluded.is_verified
                """,
                (
                    provider.user_id,
                    provider.full_name,
                    json.dumps(provider.skills),
                    self._location_to_json(provider.location),
                    provider.rating,
                    provider.review_count,
                    provider.hourly_rate,
                    provider.bio,
                    1 if provider.is_verified else 0,
                ),
            )
            conn.commit()
            return provider

        return await self._run(write)

    # ----- requests ----------------------------------------------------

    async def get_request(self, request_id: str) -> Optional[ServiceRequest]:
        def query(conn: sqlite3.Connection) -> Optional[ServiceRequest]:
            row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
            return self._row_to_request(row) if row else None

        return await self._run(query)

    async def list_requests(self, statuses: Optional[Iterable[str]] = None) -> List[ServiceRequest]:
        wanted = list(statuses) if statuses is not None else None

        def query(conn: sqlite3.Connection) -> List[ServiceRequest]:
            if wanted is None:
                rows = conn.execute("SELECT * FROM service_requests ORDER BY created_at DESC").fetchall()
            elif not wanted:
                rows = []
            else:
                placeholders = ", ".join("?" for _ in wanted)
                rows = conn.execute(
                    f"SELECT * FROM service_requests WHERE status IN ({placeholders}) ORDER BY created_at DESC",
                    tuple(wanted),
                ).fetchall()
            return [self._row_to_request(row) for row in rows]

        return await self._run(query)

    async def insert_request(self, **fields: Any) -> ServiceRequest:
        now_iso = utc_now_iso()
        request = ServiceRequest(
            id=f"req_{uuid4().hex[:10]}",
            status="open",
            created_at=now_iso,
            updated_at=now_iso,
            **fields,
        )

        def write(conn: sqlite3.Connection) -> ServiceRequest:
            conn.execute(
                """
                INSERT INTO service_requests (
                    id, buyer_id, category_id, title, description, budget_min, budget_max, deadline, location_json, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.id,
                    request.buyer_id,
                    request.category_id,
                    request.title,
                    request.description,
                    request.budget_min,
                    request.budget_max,
                    request.deadline,
                    self._location_to_json(request.location),
                    request.status,
                    request.created_at,
                    request.updated_at,
                ),
            )
            conn.commit()
            return request

        return await self._run(write)

    async def update_request_fields(self, request_id: str, fields: Dict[str, Any]) -> ServiceRequest:
        allowed = {"title", "description", "budget_min", "budget_max", "deadline", "location"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unsupported request fields: {', '.join(sorted(unknown))}")

        columns: Dict[str, Any] = {}
        for key, value in fields.items():
            if key == "location":
                columns["location_json"] = self._location_to_json(value)
            else:
                columns[key] = value
        columns["updated_at"] = utc_now_iso()

        def write(conn: sqlite3.Connection) -> ServiceRequest:
            assignments = ", ".join(f"{column} = ?" for column in columns)
            cursor = conn.execute(
                f"UPDATE service_requests SET {assignments} WHERE id = ?",
                (*columns.values(), request_id),
            )
            if cursor.rowcount != 1:
                raise NotFoundError("Request not found")
            conn.commit()
            row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
            return self._row_to_request(row)

        return await self._run(write)

    async def update_request_status(self, request_id: str, status: str) -> ServiceRequest:
        def write(conn: sqlite3.Connection) -> ServiceRequest:
            cursor = conn.execute(
                "UPDATE service_requests SET status = ?, updated_at = ? WHERE id = ?",
                (status, utc_now_iso(), request_id),
            )
            if cursor.rowcount != 1:
                raise NotFoundError("Request not found")
            conn.commit()
            row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
            return self._row_to_request(row)

        return await self._run(write)

    # ----- proposals ---------------------------------------------------

    async def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        def query(conn: sqlite3.Connection) -> Optional[Proposal]:
            row = conn.execute("SELECT * FROM proposals WHERE id = ?", (proposal_id,)).fetchone()
            return self._row_to_proposal(row) if row else None

        return await self._run(query)

    async def list_proposals(self, request_id: str) -> List[Proposal]:
        def query(conn: sqlite3.Connection) -> List[Proposal]:
            rows = conn.execute(
                "SELECT * FROM proposals WHERE request_id = ? ORDER BY created_at ASC",
                (request_id,),
            ).fetchall()
            return [self._row_to_proposal(row) for row in rows]

        return await self._run(query)

    async def insert_proposal(self, **fields: Any) -> Proposal:
        now_iso = utc_now_iso()
        proposal = Proposal(
            id=f"prp_{uuid4().hex[:10]}",
            status="pending",
            created_at=now_iso,
            updated_at=now_iso,
            **fields,
        )

        def write(conn: sqlite3.Connection) -> Proposal:
            conn.execute(
                """
                INSERT INTO proposals (
                    id, request_id, provider_id, price, timeline_estimate, cover_letter, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    proposal.id,
                    proposal.request_id,
                    proposal.provider_id,
                    proposal.price,
                    proposal.timeline_estimate,
                    proposal.cover_letter,
                    proposal.status,
                    proposal.created_at,
                    proposal.updated_at,
                ),
            )
            conn.commit()
            return proposal

        return await self._run(write)

    async def update_proposal_status(self, proposal_id: str, status: str) -> Proposal:
        def write(conn: sqlite3.Connection) -> Proposal:
            cursor = conn.execute(
                "UPDATE proposals SET status = ?, updated_at = ? WHERE id = ?",
                (status, utc_now_iso(), proposal_id),
            )
            if cursor.rowcount != 1:
                raise NotFoundError("Proposal not found")
            conn.commit()
            row = conn.execute("SELECT * FROM proposals WHERE id = ?", (proposal_id,)).fetchone()
            return self._row_to_proposal(row)

        return await self._run(write)

    # ----- conversations -----------------------------------------------

    async def find_conversation(self, request_id: str, provider_id: str) -> Optional[Conversation]:
        def query(conn: sqlite3.Connection) -> Optional[Conversation]:
            row = conn.execute(
                "SELECT * FROM conversations WHERE request_id = ? AND provider_id = ?",
                (request_id, provider_id),
            ).fetchone()
            return self._row_to_conversation(row) if row else None

        return await self._run(query)

    async def insert_conversation(self, **fields: Any) -> Conversation:
        conversation = Conversation(id=f"cnv_{uuid4().hex[:10]}", created_at=utc_now_iso(), **fields)

        def write(conn: sqlite3.Connection) -> Conversation:
            conn.execute(
                """
                INSERT INTO conversations (id, request_id, buyer_id, provider_id, request_title, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    conversation.request_id,
                    conversation.buyer_id,
                    conversation.provider_id,
                    conversation.request_title,
                    conversation.created_at,
                ),
            )
            conn.commit()
            return conversation

        return await self._run(write)

    # ----- notifications -----------------------------------------------

    async def insert_notification(self, **fields: Any) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            read=False,
            created_at=utc_now_iso(),
            **fields,
        )

        def write(conn: sqlite3.Connection) -> NotificationRecord:
            conn.execute(
                """
                INSERT INTO notifications (id, user_id, type, title, body, payload_json, read, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    record.id,
                    record.user_id,
                    record.type,
                    record.title,
                    record.body,
                    json.dumps(record.payload),
                    record.created_at,
                ),
            )
            conn.commit()
            return record

        return await self._run(write)

    async def list_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[NotificationRecord]:
        def query(conn: sqlite3.Connection) -> List[NotificationRecord]:
            sql = "SELECT * FROM notifications WHERE user_id = ?"
            if unread_only:
                sql += " AND read = 0"
            sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
            rows = conn.execute(sql, (user_id, limit)).fetchall()
            return [self._row_to_notification(row) for row in rows]

        return await self._run(query)

    async def mark_notifications_read(self, user_id: str, notification_ids: Optional[Iterable[str]] = None) -> int:
        ids = list(notification_ids) if notification_ids is not None else None

        def write(conn: sqlite3.Connection) -> int:
            if ids is None:
                cursor = conn.execute(
                    "UPDATE notifications SET read = 1 WHERE user_id = ? AND read = 0",
                    (user_id,),
                )
            elif not ids:
                return 0
            else:
                placeholders = ", ".join("?" for _ in ids)
                cursor = conn.execute(
                    f"UPDATE notifications SET read = 1 WHERE user_id = ? AND id IN ({placeholders})",
                    (user_id, *ids),
                )
            conn.commit()
            return cursor.rowcount

        return await self._run(write)
