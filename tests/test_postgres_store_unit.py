import uuid
from datetime import datetime, timezone

from nullpass.service.ciphers import SecretCipher
from nullpass.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _bare_store(cipher=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store._cipher = cipher
    return store


def test_user_rows_unseal_totp_secrets():
    cipher = SecretCipher("row-mapping-secret")
    store = _bare_store(cipher)
    now = datetime.now(timezone.utc)
    user_id = uuid.uuid4()
    row = {
        "id": user_id,
        "email": "alice@example.com",
        "password_hash": "$argon2id$...",
        "two_factor_enabled": True,
        "two_factor_secret": cipher.encrypt("JBSWY3DPEHPK3PXP"),
        "pending_two_factor_secret": None,
        "created_at": now,
        "updated_at": now,
    }
    user = store._user_from_row(row)
    assert user.id == str(user_id)
    assert user.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert user.pending_two_factor_secret is None
    assert user.disabled is False


def test_seal_is_identity_without_cipher():
    store = _bare_store()
    assert store._seal("plain") == "plain"
    assert store._unseal("plain") == "plain"


def test_entitlement_row_defaults():
    now = datetime.now(timezone.utc)
    ent = PostgresStore._entitlement_from_row(
        {
            "id": uuid.uuid4(),
            "user_id": uuid.uuid4(),
            "service": "DROP",
            "tier": None,
            "access_flags": None,
            "metadata": {"customDomain": "files.example.com"},
            "created_at": now,
            "updated_at": now,
        }
    )
    assert ent.tier == "free"
    assert ent.access_flags == {}
    assert ent.connected is True
    assert ent.metadata["customDomain"] == "files.example.com"
