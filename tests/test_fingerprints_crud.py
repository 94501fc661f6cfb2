import asyncio
from datetime import datetime, timezone

from pymongo.errors import ServerSelectionTimeoutError

from gallery.crud.fingerprints import touch_fingerprint
from gallery.fingerprint.identity import identity_for


class _UpsertCollection:
    """Applies ``$set`` / ``$setOnInsert`` the way MongoDB does for a single-document upsert."""

    def __init__(self, docs=None):
        self.docs = list(docs or [])

    async def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if all(doc.get(k) == v for k, v in query.items()):
                doc.update(update.get("$set", {}))
                return
        if upsert:
            self.docs.append({**query, **update.get("$setOnInsert", {}), **update.get("$set", {})})


class _DownCollection:
    async def update_one(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("no servers")


def test_first_playback_creates_the_row():
    db = {"media_fingerprints": _UpsertCollection()}
    identity = asyncio.run(touch_fingerprint(db, "alice", "ep1", secret="s1", ip="10.0.0.1"))

    [row] = db["media_fingerprints"].docs
    assert row["fingerprint_id"] == identity == identity_for("alice", "ep1", secret="s1")
    assert row["last_ip"] == "10.0.0.1"
    assert row["created_at"] == row["last_seen_at"]


def test_rotated_secret_rewrites_stored_identity():
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    old = {
        "user_id": "alice",
        "media_id": "ep1",
        "fingerprint_id": identity_for("alice", "ep1", secret="old-secret"),
        "created_at": created,
    }
    db = {"media_fingerprints": _UpsertCollection([old])}

    identity = asyncio.run(touch_fingerprint(db, "alice", "ep1", secret="new-secret"))

    [row] = db["media_fingerprints"].docs
    assert identity == identity_for("alice", "ep1", secret="new-secret")
    assert row["fingerprint_id"] == identity
    assert row["created_at"] == created


def test_database_errors_do_not_block_playback():
    db = {"media_fingerprints": _DownCollection()}
    identity = asyncio.run(touch_fingerprint(db, "bob", "ep1", secret="s1"))
    assert identity == identity_for("bob", "ep1", secret="s1")
