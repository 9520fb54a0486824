"""
SoulBridge Database Module
SQLite persistence for identities, verification requests, bridge requests
and the advisory session cache.

Request rows carry a ``version`` column. Updates only apply when the caller
read the latest version, so concurrent writers (a submit and a poll tick)
cannot silently overwrite each other.
"""

import json
import sqlite3
from contextlib import contextmanager
from typing import Optional, List

from soulbridge.config import config
from soulbridge.errors import StaleRequestError
from soulbridge.models import (
    BridgeRequest,
    BridgeStatus,
    ChainIdentity,
    Identity,
    VerificationLevel,
    VerificationRequest,
    VerificationStatus,
    now,
    payload_from_dict,
)


ACTIVE_VERIFICATION = ("PENDING", "IN_PROGRESS")
ACTIVE_BRIDGE = ("CREATED", "SUBMITTED", "RELAYING")


SCHEMA = """
    CREATE TABLE IF NOT EXISTS identities (
        did TEXT PRIMARY KEY,
        owner_address TEXT NOT NULL,
        owner_chain TEXT NOT NULL,
        token_id TEXT UNIQUE,
        verification_status TEXT NOT NULL DEFAULT 'NONE',
        is_active BOOLEAN NOT NULL DEFAULT 1,
        pending_issuance_tx TEXT,
        created_at REAL NOT NULL
    );

    CREATE TABLE IF NOT EXISTS chain_identities (
        did TEXT NOT NULL,
        chain_id TEXT NOT NULL,
        address TEXT NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT 0,
        linked_at REAL NOT NULL,
        position INTEGER NOT NULL,
        PRIMARY KEY (did, chain_id),
        FOREIGN KEY (did) REFERENCES identities(did)
    );

    CREATE TABLE IF NOT EXISTS verification_requests (
        id TEXT PRIMARY KEY,
        did TEXT NOT NULL,
        level TEXT NOT NULL,
        provider TEXT NOT NULL,
        status TEXT NOT NULL,
        provider_ref TEXT,
        rejection_reason TEXT,
        client_completed BOOLEAN NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (did) REFERENCES identities(did)
    );

    CREATE UNIQUE INDEX IF NOT EXISTS one_active_verification_per_did
        ON verification_requests(did)
        WHERE status IN ('PENDING', 'IN_PROGRESS');

    CREATE TABLE IF NOT EXISTS bridge_requests (
        id TEXT PRIMARY KEY,
        did TEXT NOT NULL,
        source_chain TEXT NOT NULL,
        target_chain TEXT NOT NULL,
        source_address TEXT NOT NULL,
        target_address TEXT NOT NULL,
        payload TEXT NOT NULL,
        status TEXT NOT NULL,
        transaction_hash TEXT,
        source_request_id TEXT,
        completion_tx_hash TEXT,
        error_message TEXT,
        relay_registered BOOLEAN NOT NULL DEFAULT 0,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (did) REFERENCES identities(did)
    );

    CREATE UNIQUE INDEX IF NOT EXISTS one_active_bridge_per_route
        ON bridge_requests(did, source_chain, target_chain)
        WHERE status IN ('CREATED', 'SUBMITTED', 'RELAYING');

    CREATE TABLE IF NOT EXISTS session_cache (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at REAL NOT NULL
    );
"""


class Store:
    """SQLite-backed store. One connection per store instance."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path or config.DB_PATH
        if self.db_path != ":memory:":
            config.ensure_data_dir()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.init_database()

    def init_database(self):
        """Create tables if they don't exist."""
        with self.transaction() as cursor:
            cursor.executescript(SCHEMA)
            # Databases created before bridge contract ids were recorded
            columns = [row[1] for row in cursor.execute("PRAGMA table_info(bridge_requests)")]
            if "source_request_id" not in columns:
                cursor.execute("ALTER TABLE bridge_requests ADD COLUMN source_request_id TEXT")

    @contextmanager
    def transaction(self):
        """Cursor committed on success, rolled back on error."""
        cursor = self.conn.cursor()
        try:
            yield cursor
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def close(self):
        self.conn.close()

    # ============ Identities ============

    def create_identity(self, identity: Identity) -> bool:
        """Insert a new identity. Returns False if the DID already exists."""
        try:
            with self.transaction() as cursor:
                cursor.execute("""
                    INSERT INTO identities (
                        did, owner_address, owner_chain, token_id,
                        verification_status, is_active, pending_issuance_tx, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (identity.did, identity.owner_address, identity.owner_chain,
                      identity.token_id, identity.verification_status.value,
                      identity.is_active, identity.pending_issuance_tx,
                      identity.created_at))
                for entry in identity.chain_identities:
                    self._upsert_chain_identity(cursor, identity.did, entry)
            return True
        except sqlite3.IntegrityError:
            return False

    def get_identity(self, did: str) -> Optional[Identity]:
        """Retrieve identity by DID, with its chain identities."""
        cursor = self.conn.execute("SELECT * FROM identities WHERE did = ?", (did,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._identity_from_row(row)

    def update_identity(self, identity: Identity) -> None:
        """Persist the mutable identity fields. DID and owner never change."""
        with self.transaction() as cursor:
            cursor.execute("""
                UPDATE identities
                SET token_id = ?, verification_status = ?, is_active = ?,
                    pending_issuance_tx = ?
                WHERE did = ?
            """, (identity.token_id, identity.verification_status.value,
                  identity.is_active, identity.pending_issuance_tx, identity.did))

    def upsert_chain_identity(self, did: str, entry: ChainIdentity) -> None:
        """Insert or replace the entry for ``entry.chain_id``, keeping its position."""
        with self.transaction() as cursor:
            self._upsert_chain_identity(cursor, did, entry)

    def _upsert_chain_identity(self, cursor, did: str, entry: ChainIdentity) -> None:
        cursor.execute("""
            INSERT INTO chain_identities (did, chain_id, address, is_verified, linked_at, position)
            VALUES (?, ?, ?, ?, ?,
                    (SELECT COALESCE(MAX(position), -1) + 1 FROM chain_identities WHERE did = ?))
            ON CONFLICT(did, chain_id) DO UPDATE SET
                address = excluded.address,
                is_verified = excluded.is_verified,
                linked_at = excluded.linked_at
        """, (did, entry.chain_id, entry.address, entry.is_verified, entry.linked_at, did))

    def list_chain_identities(self, did: str) -> List[ChainIdentity]:
        cursor = self.conn.execute("""
            SELECT chain_id, address, is_verified, linked_at
            FROM chain_identities WHERE did = ?
            ORDER BY position
        """, (did,))
        return [
            ChainIdentity(
                chain_id=row["chain_id"],
                address=row["address"],
                is_verified=bool(row["is_verified"]),
                linked_at=row["linked_at"],
            )
            for row in cursor.fetchall()
        ]

    def _identity_from_row(self, row: sqlite3.Row) -> Identity:
        return Identity(
            did=row["did"],
            owner_address=row["owner_address"],
            owner_chain=row["owner_chain"],
            token_id=row["token_id"],
            chain_identities=self.list_chain_identities(row["did"]),
            verification_status=VerificationStatus(row["verification_status"]),
            is_active=bool(row["is_active"]),
            pending_issuance_tx=row["pending_issuance_tx"],
            created_at=row["created_at"],
        )

    # ============ Verification requests ============

    def insert_verification_request(self, request: VerificationRequest) -> bool:
        """Insert a request. Returns False if the DID already has an active one."""
        try:
            with self.transaction() as cursor:
                cursor.execute("""
                    INSERT INTO verification_requests (
                        id, did, level, provider, status, provider_ref,
                        rejection_reason, client_completed, last_error,
                        created_at, updated_at, version
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (request.id, request.did, request.level.value, request.provider,
                      request.status.value, request.provider_ref,
                      request.rejection_reason, request.client_completed,
                      request.last_error, request.created_at, request.updated_at,
                      request.version))
            return True
        except sqlite3.IntegrityError:
            return False

    def get_verification_request(self, request_id: str) -> Optional[VerificationRequest]:
        cursor = self.conn.execute(
            "SELECT * FROM verification_requests WHERE id = ?", (request_id,)
        )
        row = cursor.fetchone()
        return self._verification_from_row(row) if row else None

    def get_active_verification(self, did: str) -> Optional[VerificationRequest]:
        cursor = self.conn.execute("""
            SELECT * FROM verification_requests
            WHERE did = ? AND status IN (?, ?)
        """, (did, *ACTIVE_VERIFICATION))
        row = cursor.fetchone()
        return self._verification_from_row(row) if row else None

    def get_latest_verification(self, did: str) -> Optional[VerificationRequest]:
        cursor = self.conn.execute("""
            SELECT * FROM verification_requests
            WHERE did = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
        """, (did,))
        row = cursor.fetchone()
        return self._verification_from_row(row) if row else None

    def list_active_verification_requests(self) -> List[VerificationRequest]:
        cursor = self.conn.execute(
            "SELECT * FROM verification_requests WHERE status IN (?, ?)",
            ACTIVE_VERIFICATION,
        )
        return [self._verification_from_row(row) for row in cursor.fetchall()]

    def update_verification_request(self, request: VerificationRequest) -> VerificationRequest:
        """
        Write ``request`` if it is still at the version it was read at.

        Raises StaleRequestError otherwise. On success the request's version
        and updated_at are advanced in place.
        """
        updated_at = now()
        with self.transaction() as cursor:
            cursor.execute("""
                UPDATE verification_requests
                SET status = ?, provider_ref = ?, rejection_reason = ?,
                    client_completed = ?, last_error = ?, updated_at = ?,
                    version = version + 1
                WHERE id = ? AND version = ?
            """, (request.status.value, request.provider_ref, request.rejection_reason,
                  request.client_completed, request.last_error, updated_at,
                  request.id, request.version))
            if cursor.rowcount == 0:
                raise StaleRequestError(
                    f"Verification request {request.id} changed since version {request.version}"
                )
        request.version += 1
        request.updated_at = updated_at
        return request

    def _verification_from_row(self, row: sqlite3.Row) -> VerificationRequest:
        return VerificationRequest(
            id=row["id"],
            did=row["did"],
            level=VerificationLevel(row["level"]),
            provider=row["provider"],
            status=VerificationStatus(row["status"]),
            provider_ref=row["provider_ref"],
            rejection_reason=row["rejection_reason"],
            client_completed=bool(row["client_completed"]),
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            version=row["version"],
        )

    # ============ Bridge requests ============

    def insert_bridge_request(self, request: BridgeRequest) -> bool:
        """Insert a request. Returns False if the route already has an active one."""
        try:
            with self.transaction() as cursor:
                cursor.execute("""
                    INSERT INTO bridge_requests (
                        id, did, source_chain, target_chain, source_address,
                        target_address, payload, status, transaction_hash,
                        source_request_id, completion_tx_hash, error_message,
                        relay_registered, created_at, updated_at, version
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (request.id, request.did, request.source_chain, request.target_chain,
                      request.source_address, request.target_address,
                      json.dumps(request.payload.to_dict(), sort_keys=True),
                      request.status.value, request.transaction_hash,
                      request.source_request_id, request.completion_tx_hash,
                      request.error_message, request.relay_registered, request.created_at,
                      request.updated_at, request.version))
            return True
        except sqlite3.IntegrityError:
            return False

    def get_bridge_request(self, request_id: str) -> Optional[BridgeRequest]:
        cursor = self.conn.execute(
            "SELECT * FROM bridge_requests WHERE id = ?", (request_id,)
        )
        row = cursor.fetchone()
        return self._bridge_from_row(row) if row else None

    def get_active_bridge_for_route(
        self, did: str, source_chain: str, target_chain: str
    ) -> Optional[BridgeRequest]:
        cursor = self.conn.execute("""
            SELECT * FROM bridge_requests
            WHERE did = ? AND source_chain = ? AND target_chain = ?
              AND status IN (?, ?, ?)
        """, (did, source_chain, target_chain, *ACTIVE_BRIDGE))
        row = cursor.fetchone()
        return self._bridge_from_row(row) if row else None

    def list_bridge_requests(self, did: str) -> List[BridgeRequest]:
        cursor = self.conn.execute("""
            SELECT * FROM bridge_requests WHERE did = ?
            ORDER BY created_at DESC, rowid DESC
        """, (did,))
        return [self._bridge_from_row(row) for row in cursor.fetchall()]

    def list_active_bridge_requests(self) -> List[BridgeRequest]:
        cursor = self.conn.execute(
            "SELECT * FROM bridge_requests WHERE status IN (?, ?, ?)", ACTIVE_BRIDGE
        )
        return [self._bridge_from_row(row) for row in cursor.fetchall()]

    def update_bridge_request(self, request: BridgeRequest) -> BridgeRequest:
        """Versioned write, see update_verification_request."""
        updated_at = now()
        with self.transaction() as cursor:
            cursor.execute("""
                UPDATE bridge_requests
                SET status = ?, transaction_hash = ?, source_request_id = ?,
                    completion_tx_hash = ?, error_message = ?, relay_registered = ?,
                    updated_at = ?, version = version + 1
                WHERE id = ? AND version = ?
            """, (request.status.value, request.transaction_hash,
                  request.source_request_id, request.completion_tx_hash, request.error_message,
                  request.relay_registered, updated_at, request.id, request.version))
            if cursor.rowcount == 0:
                raise StaleRequestError(
                    f"Bridge request {request.id} changed since version {request.version}"
                )
        request.version += 1
        request.updated_at = updated_at
        return request

    def _bridge_from_row(self, row: sqlite3.Row) -> BridgeRequest:
        return BridgeRequest(
            id=row["id"],
            did=row["did"],
            source_chain=row["source_chain"],
            target_chain=row["target_chain"],
            source_address=row["source_address"],
            target_address=row["target_address"],
            payload=payload_from_dict(json.loads(row["payload"])),
            status=BridgeStatus(row["status"]),
            transaction_hash=row["transaction_hash"],
            source_request_id=row["source_request_id"],
            completion_tx_hash=row["completion_tx_hash"],
            error_message=row["error_message"],
            relay_registered=bool(row["relay_registered"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            version=row["version"],
        )

    # ============ Session cache (advisory) ============

    def cache_set(self, key: str, value: str) -> None:
        with self.transaction() as cursor:
            cursor.execute("""
                INSERT INTO session_cache (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
            """, (key, value, now()))

    def cache_get(self, key: str) -> Optional[str]:
        cursor = self.conn.execute("SELECT value FROM session_cache WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row["value"] if row else None

    def cache_delete(self, key: str) -> None:
        with self.transaction() as cursor:
            cursor.execute("DELETE FROM session_cache WHERE key = ?", (key,))
