"""Document storage for entitlement records and generated artifacts.

Two interchangeable backends are provided: ``SqliteStore`` keeps everything in
a local sqlite file and ``FirestoreStore`` talks to a hosted Firestore
database through ``firebase-admin``. Both expose the same methods and return
plain dicts with timezone-aware ``datetime`` values.

The two writes the metering engine depends on are atomic in both backends:
``create_user`` never overwrites an existing record and
``consume_free_generation`` is a single conditional decrement.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core.exceptions import AlreadyExists, GoogleAPIError

from .config import Config
from .metering import DEFAULT_FREE_GENERATIONS, FREE

logger = logging.getLogger(__name__)

USERS = "users"
QUIZZES = "quizzes"
MOCK_TESTS = "mock_tests"
SCORES = "scores"


class StoreError(RuntimeError):
    """Raised when the backing store cannot complete an operation."""


def new_user_record(user_id: str, now: datetime) -> Dict:
    return {
        "user_id": user_id,
        "free_generations_remaining": DEFAULT_FREE_GENERATIONS,
        "subscription_status": FREE,
        "subscription_expiry": None,
        "created_at": now,
    }


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Fixed precision keeps the stored strings comparable in SQL.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SqliteStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30)
        except sqlite3.Error as exc:
            raise StoreError(f"Could not open database {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        finally:
            conn.close()

    def init(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    free_generations_remaining INTEGER NOT NULL,
                    subscription_status TEXT NOT NULL,
                    subscription_expiry TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quizzes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    quiz_id TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    content_name TEXT NOT NULL,
                    source TEXT NOT NULL,
                    details_json TEXT NOT NULL,
                    questions_json TEXT NOT NULL,
                    flashcards_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scores (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    quiz_id TEXT NOT NULL,
                    player_name TEXT NOT NULL,
                    score REAL NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS mock_tests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    test_id TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    topic TEXT NOT NULL,
                    difficulty TEXT NOT NULL,
                    num_questions INTEGER NOT NULL,
                    test_data_json TEXT NOT NULL,
                    pdf_path TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def close(self) -> None:
        # Connections are opened per call.
        pass

    # Entitlement records

    @staticmethod
    def _user_from_row(row: sqlite3.Row) -> Dict:
        return {
            "user_id": row["user_id"],
            "free_generations_remaining": int(row["free_generations_remaining"]),
            "subscription_status": row["subscription_status"],
            "subscription_expiry": from_db_time(row["subscription_expiry"]),
            "created_at": from_db_time(row["created_at"]),
        }

    def get_user(self, user_id: str) -> Optional[Dict]:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT user_id, free_generations_remaining, subscription_status,
                       subscription_expiry, created_at
                FROM users
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row is not None else None

    def create_user(self, user_id: str, now: datetime) -> Dict:
        record = new_user_record(user_id, now)
        with self.connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO users
                (user_id, free_generations_remaining, subscription_status, subscription_expiry, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    record["free_generations_remaining"],
                    record["subscription_status"],
                    None,
                    to_db_time(now),
                ),
            )
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
            conn.commit()
        return self._user_from_row(row)

    def revert_to_free(self, user_id: str, lapsed_at: datetime) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE users
                SET subscription_status = ?, subscription_expiry = NULL
                WHERE user_id = ?
                  AND subscription_status != ?
                  AND (subscription_expiry IS NULL OR subscription_expiry <= ?)
                """,
                (FREE, user_id, FREE, to_db_time(lapsed_at)),
            )
            conn.commit()

    def consume_free_generation(self, user_id: str) -> Optional[int]:
        with self.connect() as conn:
            cur = conn.execute(
                """
                UPDATE users
                SET free_generations_remaining = free_generations_remaining - 1
                WHERE user_id = ?
                  AND subscription_status = ?
                  AND free_generations_remaining > 0
                """,
                (user_id, FREE),
            )
            if cur.rowcount != 1:
                conn.rollback()
                return None
            row = conn.execute(
                "SELECT free_generations_remaining FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            conn.commit()
        return int(row["free_generations_remaining"])

    def set_subscription(self, user_id: str, plan: str, expiry: datetime) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE users SET subscription_status = ?, subscription_expiry = ? WHERE user_id = ?",
                (plan, to_db_time(expiry), user_id),
            )
            conn.commit()

    # Quizzes

    @staticmethod
    def _quiz_from_row(row: sqlite3.Row) -> Dict:
        return {
            "quiz_id": row["quiz_id"],
            "user_id": row["user_id"],
            "content_name": row["content_name"],
            "source": row["source"],
            "details": json.loads(row["details_json"]) if row["details_json"] else {},
            "questions": json.loads(row["questions_json"]) if row["questions_json"] else [],
            "flashcards": json.loads(row["flashcards_json"]) if row["flashcards_json"] else [],
            "created_at": from_db_time(row["created_at"]),
        }

    def add_quiz(self, data: Dict) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO quizzes
                (quiz_id, user_id, content_name, source, details_json, questions_json, flashcards_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data["quiz_id"],
                    data["user_id"],
                    data["content_name"],
                    data.get("source", "text"),
                    json.dumps(data.get("details", {}), ensure_ascii=False),
                    json.dumps(data.get("questions", []), ensure_ascii=False),
                    json.dumps(data.get("flashcards", []), ensure_ascii=False),
                    to_db_time(data["created_at"]),
                ),
            )
            conn.commit()

    def get_quiz(self, quiz_id: str) -> Optional[Dict]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM quizzes WHERE quiz_id = ?", (quiz_id,)).fetchone()
        return self._quiz_from_row(row) if row is not None else None

    def delete_quiz(self, quiz_id: str) -> int:
        with self.connect() as conn:
            cur = conn.execute("DELETE FROM quizzes WHERE quiz_id = ?", (quiz_id,))
            conn.commit()
            return cur.rowcount

    def recent_quizzes(self, limit: int = 10, user_id: Optional[str] = None) -> List[Dict]:
        with self.connect() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM quizzes ORDER BY created_at DESC, id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM quizzes WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
        return [self._quiz_from_row(row) for row in rows]

    # Scores

    def add_score(self, data: Dict) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO scores (quiz_id, player_name, score, created_at) VALUES (?, ?, ?, ?)",
                (data["quiz_id"], data["player_name"], data["score"], to_db_time(data["created_at"])),
            )
            conn.commit()

    def leaderboard(self, quiz_id: str, limit: int = 10) -> List[Dict]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT player_name, score
                FROM scores
                WHERE quiz_id = ?
                ORDER BY score DESC, id ASC
                LIMIT ?
                """,
                (quiz_id, limit),
            ).fetchall()
        return [{"player_name": row["player_name"], "score": row["score"]} for row in rows]

    # Mock tests

    @staticmethod
    def _mock_test_from_row(row: sqlite3.Row) -> Dict:
        return {
            "test_id": row["test_id"],
            "user_id": row["user_id"],
            "topic": row["topic"],
            "difficulty": row["difficulty"],
            "num_questions": row["num_questions"],
            "test_data": json.loads(row["test_data_json"]) if row["test_data_json"] else {},
            "pdf_path": row["pdf_path"],
            "created_at": from_db_time(row["created_at"]),
        }

    def add_mock_test(self, data: Dict) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO mock_tests
                (test_id, user_id, topic, difficulty, num_questions, test_data_json, pdf_path, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data["test_id"],
                    data["user_id"],
                    data["topic"],
                    data["difficulty"],
                    data["num_questions"],
                    json.dumps(data.get("test_data", {}), ensure_ascii=False),
                    data["pdf_path"],
                    to_db_time(data["created_at"]),
                ),
            )
            conn.commit()

    def get_mock_test(self, test_id: str) -> Optional[Dict]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM mock_tests WHERE test_id = ?", (test_id,)).fetchone()
        return self._mock_test_from_row(row) if row is not None else None

    def delete_mock_test(self, test_id: str) -> int:
        with self.connect() as conn:
            cur = conn.execute("DELETE FROM mock_tests WHERE test_id = ?", (test_id,))
            conn.commit()
            return cur.rowcount

    def recent_mock_tests(self, user_id: str, limit: int = 10) -> List[Dict]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mock_tests WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._mock_test_from_row(row) for row in rows]


class FirestoreStore:
    """Store backed by a Firestore database.

    ``credentials_source`` is either a path to a service-account JSON file or
    the JSON document itself.
    """

    APP_NAME = "studyquiz"

    def __init__(self, credentials_source: str) -> None:
        if not credentials_source:
            raise ValueError("FIREBASE_CREDENTIALS is required for the firestore backend.")
        if os.path.exists(credentials_source):
            cred = credentials.Certificate(credentials_source)
        else:
            cred = credentials.Certificate(json.loads(credentials_source))
        self.app = firebase_admin.initialize_app(cred, name=self.APP_NAME)
        self.db = firestore.client(app=self.app)

    @contextmanager
    def errors(self) -> Iterator[None]:
        try:
            yield
        except GoogleAPIError as exc:
            raise StoreError(str(exc)) from exc

    def init(self) -> None:
        pass

    def close(self) -> None:
        firebase_admin.delete_app(self.app)

    def _first(self, collection: str, field: str, value: str):
        docs = list(self.db.collection(collection).where(field, "==", value).limit(1).stream())
        return docs[0] if docs else None

    def _delete_matching(self, collection: str, field: str, value: str) -> int:
        deleted = 0
        for doc in self.db.collection(collection).where(field, "==", value).stream():
            doc.reference.delete()
            deleted += 1
        return deleted

    # Entitlement records

    def get_user(self, user_id: str) -> Optional[Dict]:
        with self.errors():
            snapshot = self.db.collection(USERS).document(user_id).get()
        return snapshot.to_dict() if snapshot.exists else None

    def create_user(self, user_id: str, now: datetime) -> Dict:
        user_ref = self.db.collection(USERS).document(user_id)
        with self.errors():
            try:
                user_ref.create(new_user_record(user_id, now))
            except AlreadyExists:
                logger.debug("User %s was created concurrently", user_id)
            return user_ref.get().to_dict()

    def revert_to_free(self, user_id: str, lapsed_at: datetime) -> None:
        @firestore.transactional
        def _revert_in_transaction(transaction, user_ref):
            snapshot = user_ref.get(transaction=transaction)
            if not snapshot.exists:
                return
            data = snapshot.to_dict()
            expiry = data.get("subscription_expiry")
            if data.get("subscription_status", FREE) == FREE:
                return
            if expiry is not None and expiry > lapsed_at:
                return
            transaction.update(user_ref, {"subscription_status": FREE, "subscription_expiry": None})

        user_ref = self.db.collection(USERS).document(user_id)
        with self.errors():
            _revert_in_transaction(self.db.transaction(), user_ref)

    def consume_free_generation(self, user_id: str) -> Optional[int]:
        @firestore.transactional
        def _consume_in_transaction(transaction, user_ref):
            snapshot = user_ref.get(transaction=transaction)
            if not snapshot.exists:
                return None
            data = snapshot.to_dict()
            remaining = int(data.get("free_generations_remaining") or 0)
            if data.get("subscription_status", FREE) != FREE or remaining <= 0:
                return None
            transaction.update(user_ref, {"free_generations_remaining": remaining - 1})
            return remaining - 1

        user_ref = self.db.collection(USERS).document(user_id)
        with self.errors():
            return _consume_in_transaction(self.db.transaction(), user_ref)

    def set_subscription(self, user_id: str, plan: str, expiry: datetime) -> None:
        with self.errors():
            self.db.collection(USERS).document(user_id).update(
                {"subscription_status": plan, "subscription_expiry": expiry}
            )

    # Quizzes

    def add_quiz(self, data: Dict) -> None:
        with self.errors():
            self.db.collection(QUIZZES).add(dict(data))

    def get_quiz(self, quiz_id: str) -> Optional[Dict]:
        with self.errors():
            doc = self._first(QUIZZES, "quiz_id", quiz_id)
        return doc.to_dict() if doc is not None else None

    def delete_quiz(self, quiz_id: str) -> int:
        with self.errors():
            return self._delete_matching(QUIZZES, "quiz_id", quiz_id)

    def recent_quizzes(self, limit: int = 10, user_id: Optional[str] = None) -> List[Dict]:
        query = self.db.collection(QUIZZES)
        if user_id is not None:
            query = query.where("user_id", "==", user_id)
        query = query.order_by("created_at", direction=firestore.Query.DESCENDING).limit(limit)
        with self.errors():
            return [doc.to_dict() for doc in query.stream()]

    # Scores

    def add_score(self, data: Dict) -> None:
        with self.errors():
            self.db.collection(SCORES).add(dict(data))

    def leaderboard(self, quiz_id: str, limit: int = 10) -> List[Dict]:
        query = (
            self.db.collection(SCORES)
            .where("quiz_id", "==", quiz_id)
            .order_by("score", direction=firestore.Query.DESCENDING)
            .limit(limit)
        )
        with self.errors():
            docs = [doc.to_dict() for doc in query.stream()]
        return [{"player_name": doc.get("player_name"), "score": doc.get("score")} for doc in docs]

    # Mock tests

    def add_mock_test(self, data: Dict) -> None:
        with self.errors():
            self.db.collection(MOCK_TESTS).add(dict(data))

    def get_mock_test(self, test_id: str) -> Optional[Dict]:
        with self.errors():
            doc = self._first(MOCK_TESTS, "test_id", test_id)
        return doc.to_dict() if doc is not None else None

    def delete_mock_test(self, test_id: str) -> int:
        with self.errors():
            return self._delete_matching(MOCK_TESTS, "test_id", test_id)

    def recent_mock_tests(self, user_id: str, limit: int = 10) -> List[Dict]:
        query = (
            self.db.collection(MOCK_TESTS)
            .where("user_id", "==", user_id)
            .order_by("created_at", direction=firestore.Query.DESCENDING)
            .limit(limit)
        )
        with self.errors():
            return [doc.to_dict() for doc in query.stream()]


def open_store(config: Config):
    if config.store_backend == "firestore":
        store = FirestoreStore(config.firebase_credentials)
    else:
        store = SqliteStore(config.db_path)
    store.init()
    logger.info("Using %s store", config.store_backend)
    return store
