import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional
from uuid import uuid4

from quoteflow.models import ServiceEntry, ServiceProvider, User
from quoteflow.services.errors import InvalidInputError, NotFoundError, UnauthorizedError

logger = logging.getLogger(__name__)

USER_ROLES = {"requester", "provider", "admin"}
REQUESTER_CAPABLE_ROLES = {"requester", "admin"}

SEED_DEMO = os.getenv("QUOTEFLOW_SEED_DEMO", "true").lower() in {"1", "true", "yes"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class DirectoryStore:
    db_path: str
    seed_demo: bool = False

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()
        if self.seed_demo:
            self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        display_name TEXT NOT NULL,
                        email TEXT NOT NULL COLLATE NOCASE UNIQUE,
                        role TEXT NOT NULL,
                        profile_json TEXT NOT NULL DEFAULT '{}',
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS providers (
                        id TEXT PRIMARY KEY,
                        owner_user_id TEXT NOT NULL UNIQUE,
                        name TEXT NOT NULL,
                        services_json TEXT NOT NULL DEFAULT '[]',
                        rating REAL NOT NULL DEFAULT 0.0,
                        status TEXT NOT NULL DEFAULT 'active',
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.commit()

    def _seed_if_needed(self) -> None:
        with self._lock:
            with self._connect() as conn:
                count = conn.execute("SELECT COUNT(*) AS n FROM users").fetchone()["n"]
        if count:
            return
        self.create_user(
            display_name="Demo Requester",
            email="requester@quoteflow.local",
            role="requester",
            user_id="user_requester",
        )
        seed_providers = [
            (
                "user_plumber",
                "Pipeline Plumbing",
                "plumber@quoteflow.local",
                [ServiceEntry(name="Leak repair", price=120, description="Fix minor to major leaks")],
                4.7,
            ),
            (
                "user_electrician",
                "Bright Spark Electrical",
                "electrician@quoteflow.local",
                [ServiceEntry(name="Switchboard upgrade", price=650, description="Replace ageing switchboards")],
                4.5,
            ),
        ]
        for user_id, name, email, services, rating in seed_providers:
            self.create_user(display_name=name, email=email, role="provider", user_id=user_id)
            self.create_provider(
                owner_user_id=user_id,
                name=name,
                services=services,
                rating=rating,
                provider_id=f"prov_{user_id.split('_', 1)[1]}",
            )
        logger.info("Seeded demo directory users and providers")

    def _row_to_user(self, row: sqlite3.Row) -> User:
        try:
            profile = json.loads(row["profile_json"] or "{}")
        except json.JSONDecodeError:
            profile = {}
        if not isinstance(profile, dict):
            profile = {}
        return User(
            id=row["id"],
            display_name=row["display_name"],
            email=row["email"],
            role=row["role"],
            profile=profile,
            created_at=row["created_at"],
        )

    def _row_to_provider(self, row: sqlite3.Row) -> ServiceProvider:
        try:
            raw_services = json.loads(row["services_json"] or "[]")
        except json.JSONDecodeError:
            raw_services = []
        if not isinstance(raw_services, list):
            raw_services = []
        services = [ServiceEntry(**item) for item in raw_services if isinstance(item, dict)]
        return ServiceProvider(
            id=row["id"],
            owner_user_id=row["owner_user_id"],
            name=row["name"],
            services=services,
            rating=float(row["rating"]),
            status=row["status"],
            created_at=row["created_at"],
        )

    def create_user(
        self,
        *,
        display_name: str,
        email: str,
        role: str = "requester",
        profile: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> User:
        cleaned_name = display_name.strip()
        cleaned_email = email.strip().lower()
        if not cleaned_name:
            raise InvalidInputError("Display name is required")
        if "@" not in cleaned_email:
            raise InvalidInputError("A valid email is required")
        if role not in USER_ROLES:
            raise InvalidInputError("Invalid role. Allowed: requester, provider, admin")

        new_id = user_id or f"usr_{uuid4().hex[:10]}"
        with self._lock:
            with self._connect() as conn:
                existing = conn.execute("SELECT id FROM users WHERE email = ?", (cleaned_email,)).fetchone()
                if existing:
                    raise InvalidInputError("Email is already registered")
                conn.execute(
                    """
                    INSERT INTO users (id, display_name, email, role, profile_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (new_id, cleaned_name, cleaned_email, role, json.dumps(profile or {}), _now_iso()),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM users WHERE id = ?", (new_id,)).fetchone()
        logger.info("user_created user_id=%s role=%s", new_id, role)
        return self._row_to_user(row)

    def resolve_user(self, user_id: str) -> User:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise NotFoundError("User not found")
        return self._row_to_user(row)

    def create_provider(
        self,
        *,
        owner_user_id: str,
        name: str,
        services: Optional[List[ServiceEntry]] = None,
        rating: float = 0.0,
        provider_id: Optional[str] = None,
    ) -> ServiceProvider:
        cleaned_name = name.strip()
        if not cleaned_name:
            raise InvalidInputError("Provider name is required")
        if rating < 0 or rating > 5:
            raise InvalidInputError("rating must be between 0.0 and 5.0")
        owner = self.resolve_user(owner_user_id)
        if owner.role != "provider":
            raise InvalidInputError("Only provider accounts can own a provider profile")

        new_id = provider_id or f"prov_{uuid4().hex[:10]}"
        services_json = json.dumps([entry.model_dump() for entry in services or []])
        with self._lock:
            with self._connect() as conn:
                existing = conn.execute(
                    "SELECT id FROM providers WHERE owner_user_id = ?",
                    (owner_user_id,),
                ).fetchone()
                if existing:
                    raise InvalidInputError("User already owns a provider profile")
                conn.execute(
                    """
                    INSERT INTO providers (id, owner_user_id, name, services_json, rating, status, created_at)
                    VALUES (?, ?, ?, ?, ?, 'active', ?)
                    """,
                    (new_id, owner_user_id, cleaned_name, services_json, float(rating), _now_iso()),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM providers WHERE id = ?", (new_id,)).fetchone()
        logger.info("provider_created provider_id=%s owner_user_id=%s", new_id, owner_user_id)
        return self._row_to_provider(row)

    def resolve_provider(self, provider_id: str) -> ServiceProvider:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise NotFoundError("Provider not found")
        return self._row_to_provider(row)

    def list_providers(self, include_inactive: bool = False) -> List[ServiceProvider]:
        query = "SELECT * FROM providers"
        if not include_inactive:
            query += " WHERE status = 'active'"
        query += " ORDER BY rating DESC, created_at ASC"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query).fetchall()
        return [self._row_to_provider(row) for row in rows]

    def deactivate_provider(self, *, provider_id: str, actor_user_id: str) -> ServiceProvider:
        provider = self.resolve_provider(provider_id)
        if provider.owner_user_id != actor_user_id:
            raise UnauthorizedError("Only the provider owner can deactivate this listing")
        with self._lock:
            with self._connect() as conn:
                conn.execute("UPDATE providers SET status = 'inactive' WHERE id = ?", (provider_id,))
                conn.commit()
        logger.info("provider_deactivated provider_id=%s", provider_id)
        return provider.model_copy(update={"status": "inactive"})


default_db = str(Path(__file__).resolve().parents[2] / "data" / "quoteflow.sqlite3")
DB_PATH = os.getenv("QUOTEFLOW_DB_PATH", default_db)
directory_store = DirectoryStore(db_path=DB_PATH, seed_demo=SEED_DEMO)
