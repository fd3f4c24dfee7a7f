import json
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from config import DB_PATH
from errors import CredentialAlreadyBound, StorageError
from models import PasskeySummary, Profile, StoredPasskey


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    conn = get_db()
    cur = conn.cursor()

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS profiles (
            id     TEXT PRIMARY KEY,
            email  TEXT,
            active INTEGER
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS passkey_credentials (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,

            credential_id TEXT UNIQUE NOT NULL,
            public_key    TEXT NOT NULL,
            counter       INTEGER NOT NULL DEFAULT 0,
            transports    TEXT,
            device_name   TEXT,
            aaguid        TEXT,

            created_at    TEXT NOT NULL,
            last_used_at  TEXT,
            revoked_at    TEXT
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS ix_passkey_credentials_user ON passkey_credentials(user_id)"
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            action     TEXT NOT NULL,
            user_id    TEXT,
            user_email TEXT,
            metadata   TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )

    conn.commit()
    conn.close()


def _profile_from_row(row: sqlite3.Row) -> Profile:
    active = row["active"]
    return Profile(
        id=row["id"],
        email=row["email"],
        active=None if active is None else bool(active),
    )


def _passkey_from_row(row: sqlite3.Row) -> StoredPasskey:
    try:
        transports = json.loads(row["transports"] or "[]")
    except ValueError:
        transports = []
    return StoredPasskey(
        id=row["id"],
        credential_id=row["credential_id"],
        user_id=row["user_id"],
        public_key=row["public_key"],
        counter=int(row["counter"] or 0),
        transports=tuple(t for t in transports if isinstance(t, str)),
        device_name=row["device_name"],
        created_at=row["created_at"],
        last_used_at=row["last_used_at"],
        revoked_at=row["revoked_at"],
    )


def upsert_profile(user_id: str, email: Optional[str], active: Optional[bool] = True) -> None:
    conn = get_db()
    try:
        conn.execute(
            """
            INSERT INTO profiles(id, email, active) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET email = excluded.email, active = excluded.active
            """,
            (user_id, email, None if active is None else int(active)),
        )
        conn.commit()
    except sqlite3.Error as e:
        raise StorageError(str(e)) from e
    finally:
        conn.close()


def get_profile_by_id(user_id: str) -> Optional[Profile]:
    conn = get_db()
    try:
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
    except sqlite3.Error as e:
        raise StorageError(str(e)) from e
    finally:
        conn.close()
    return _profile_from_row(row) if row else None


def find_profile_by_email(email: str) -> Optional[Profile]:
    conn = get_db()
    try:
        row = conn.execute(
            "SELECT * FROM profiles WHERE lower(email) = lower(?) LIMIT 1", (email,)
        ).fetchone()
    except sqlite3.Error as e:
        raise StorageError(str(e)) from e
    finally:
        conn.close()
    return _profile_from_row(row) if row else None


def list_active_credentials(user_id: str) -> list[StoredPasskey]:
    conn = get_db()
    try:
        rows = conn.execute(
            """
            SELECT * FROM passkey_credentials
            WHERE user_id = ? AND revoked_at IS NULL
            ORDER BY created_at DESC, id DESC
            """,
            (user_id,),
        ).fetchall()
    except sqlite3.Error as e:
        raise StorageError(str(e)) from e
    finally:
        conn.close()
    return [_passkey_from_row(r) for r in rows]


def find_active_credential(credential_id: str, user_id: str) -> Optional[StoredPasskey]:
    conn = get_db()
    try:
        row = conn.execute(
            """
            SELECT * FROM passkey_credentials
            WHERE credential_id = ? AND user_id = ? AND revoked_at IS NULL
            """,
            (credential_id, user_id),
        ).fetchone()
    except sqlite3.Error as e:
        raise StorageError(str(e)) from e
    finally:
        conn.close()
    return _passkey_from_row(row) if row else None


def save_credential(
    user_id: str,
    credential_id: str,
    public_key: str,
    counter: int,
    transports: list[str],
    device_name: Optional[str],
    aaguid: Optional[str],
    used_at: str,
) -> int:
    """
    Insert a credential, or update it in place when the same user registers
    the same credential id again (which also lifts a prior revocation).

    The ownership check and the write share one IMMEDIATE transaction, and the
    UNIQUE constraint on credential_id backs it up across processes.

    Raises:
        CredentialAlreadyBound: credential_id belongs to another user
        StorageError: any other database failure
    """
    conn = get_db()
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        existing = conn.execute(
            "SELECT id, user_id FROM passkey_credentials WHERE credential_id = ?",
            (credential_id,),
        ).fetchone()

        if existing and existing["user_id"] != user_id:
            conn.execute("ROLLBACK")
            raise CredentialAlreadyBound(credential_id)

        transports_json = json.dumps(transports or [])
        if existing:
            conn.execute(
                """
                UPDATE passkey_credentials
                SET public_key = ?, counter = ?, transports = ?, device_name = ?,
                    aaguid = ?, revoked_at = NULL, last_used_at = ?
                WHERE id = ?
                """,
                (public_key, counter, transports_json, device_name, aaguid, used_at, existing["id"]),
            )
            passkey_id = int(existing["id"])
        else:
            cur = conn.execute(
                """
                INSERT INTO passkey_credentials(
                    user_id, credential_id, public_key, counter, transports,
                    device_name, aaguid, created_at, last_used_at, revoked_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
                """,
                (user_id, credential_id, public_key, counter, transports_json,
                 device_name, aaguid, used_at, used_at),
            )
            passkey_id = int(cur.lastrowid)

        conn.execute("COMMIT")
        return passkey_id
    except sqlite3.IntegrityError as e:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise CredentialAlreadyBound(credential_id) from e
    except sqlite3.Error as e:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise StorageError(str(e)) from e
    finally:
        conn.close()


def update_credential_counter(
    credential_id: str,
    user_id: str,
    new_counter: int,
    used_at: str,
) -> None:
    conn = get_db()
    try:
        conn.execute(
            """
            UPDATE passkey_credentials
            SET counter = MAX(counter, ?), last_used_at = ?
            WHERE credential_id = ? AND user_id = ?
            """,
            (new_counter, used_at, credential_id, user_id),
        )
        conn.commit()
    except sqlite3.Error as e:
        raise StorageError(str(e)) from e
    finally:
        conn.close()


def list_passkey_summaries(user_id: str) -> list[PasskeySummary]:
    conn = get_db()
    try:
        rows = conn.execute(
            """
            SELECT id, device_name, created_at, last_used_at FROM passkey_credentials
            WHERE user_id = ? AND revoked_at IS NULL
            ORDER BY created_at DESC, id DESC
            """,
            (user_id,),
        ).fetchall()
    except sqlite3.Error as e:
        raise StorageError(str(e)) from e
    finally:
        conn.close()
    return [
        PasskeySummary(
            id=r["id"],
            device_name=r["device_name"],
            created_at=r["created_at"],
            last_used_at=r["last_used_at"],
        )
        for r in rows
    ]


def revoke_credential(passkey_id: int, user_id: str, revoked_at: str) -> bool:
    conn = get_db()
    try:
        cur = conn.execute(
            """
            UPDATE passkey_credentials SET revoked_at = ?
            WHERE id = ? AND user_id = ? AND revoked_at IS NULL
            """,
            (revoked_at, passkey_id, user_id),
        )
        conn.commit()
    except sqlite3.Error as e:
        raise StorageError(str(e)) from e
    finally:
        conn.close()
    return cur.rowcount > 0


def insert_audit_log(
    action: str,
    user_id: Optional[str],
    user_email: Optional[str],
    metadata: dict,
) -> None:
    conn = get_db()
    try:
        conn.execute(
            """
            INSERT INTO audit_logs(action, user_id, user_email, metadata, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (action, user_id, user_email, json.dumps(metadata, default=str), utcnow_iso()),
        )
        conn.commit()
    except sqlite3.Error as e:
        raise StorageError(str(e)) from e
    finally:
        conn.close()


def list_audit_logs(action: Optional[str] = None) -> list[dict]:
    conn = get_db()
    try:
        if action:
            rows = conn.execute(
                "SELECT * FROM audit_logs WHERE action = ? ORDER BY id", (action,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM audit_logs ORDER BY id").fetchall()
    except sqlite3.Error as e:
        raise StorageError(str(e)) from e
    finally:
        conn.close()
    return [
        {
            "action": r["action"],
            "user_id": r["user_id"],
            "user_email": r["user_email"],
            "metadata": json.loads(r["metadata"]),
            "created_at": r["created_at"],
        }
        for r in rows
    ]
