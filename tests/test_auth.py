import asyncio
from datetime import timedelta

import pytest
from fastapi import status
from sqlalchemy.exc import IntegrityError

from crm import auth, crud, models
from crm.errors import StorageError, ValidationError
from crm.identity import IdentityClaims, create_access_token

from conftest import auth_headers, make_user


def test_sync_creates_then_updates_user(client, db_session):
    headers = auth_headers("uid-1", "ann@example.com", name="Ann", provider="google.com")

    first = client.post("/auth/sync", headers=headers)
    assert first.status_code == status.HTTP_201_CREATED
    body = first.json()
    assert body["message"] == "User created"
    assert body["user"]["firebaseUid"] == "uid-1"
    assert body["user"]["provider"] == "google"
    assert body["user"]["displayName"] == "Ann"

    second = client.post(
        "/auth/sync", headers=auth_headers("uid-1", "ann@example.com", name="Ann B")
    )
    assert second.status_code == status.HTTP_200_OK
    assert second.json()["message"] == "User updated"
    assert second.json()["user"]["id"] == body["user"]["id"]
    assert second.json()["user"]["displayName"] == "Ann B"
    assert second.json()["user"]["provider"] == "password"


def test_sync_requires_email_in_token(client):
    token = create_access_token({"sub": "uid-x"})
    response = client.post("/auth/sync", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["detail"] == "Email missing in token"


def test_missing_and_invalid_tokens_are_rejected(client):
    assert client.get("/contacts").status_code == status.HTTP_401_UNAUTHORIZED

    garbage = client.get("/contacts", headers={"Authorization": "Bearer not-a-token"})
    assert garbage.status_code == status.HTTP_401_UNAUTHORIZED

    expired = create_access_token(
        {"sub": "uid-1", "email": "ann@example.com"}, expires_delta=timedelta(minutes=-5)
    )
    response = client.get("/contacts", headers={"Authorization": f"Bearer {expired}"})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["detail"] == "Token has expired"


def test_unconfigured_identity_provider_is_a_server_error(client, settings, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_PROVIDER", "firebase")
    monkeypatch.setattr(settings, "FIREBASE_PROJECT_ID", None)
    response = client.get("/contacts", headers={"Authorization": "Bearer whatever"})
    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR


def test_me_requires_synced_user(client):
    headers = auth_headers("uid-me", "me@example.com")
    assert client.get("/auth/me", headers=headers).status_code == status.HTTP_404_NOT_FOUND

    client.post("/auth/sync", headers=headers)
    response = client.get("/auth/me", headers=headers)
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["user"]["email"] == "me@example.com"


def test_profile_update_changes_only_given_fields(client):
    headers = auth_headers("uid-p", "p@example.com", name="Pat")
    client.post("/auth/sync", headers=headers)

    response = client.put(
        "/auth/profile",
        json={"photoURL": "https://img.example.com/p.png", "preferences": {"theme": "dark"}},
        headers=headers,
    )
    assert response.status_code == status.HTTP_200_OK
    user = response.json()["user"]
    assert user["photoURL"] == "https://img.example.com/p.png"
    assert user["preferences"] == {"theme": "dark"}
    assert user["displayName"] == "Pat"


def test_profile_update_unknown_user(client):
    response = client.put(
        "/auth/profile",
        json={"displayName": "Nobody"},
        headers=auth_headers("uid-none", "none@example.com"),
    )
    assert response.status_code == status.HTTP_404_NOT_FOUND


def test_first_request_creates_owner(client, db_session):
    response = client.get("/contacts", headers=auth_headers("uid-new", "new@example.com"))
    assert response.status_code == status.HTTP_200_OK
    assert crud.get_user_by_uid(db_session, "uid-new") is not None


def test_sync_prefers_email_and_links_placeholder_by_email(db_session):
    placeholder = models.User(email="Lee@Example.com", firebase_uid=None)
    db_session.add(placeholder)
    db_session.commit()

    user, outcome = crud.sync_user(
        db_session, IdentityClaims(uid="uid-lee", email="lee@example.com")
    )
    assert outcome == "updated"
    assert user.id == placeholder.id
    assert user.firebase_uid == "uid-lee"


def test_sync_merges_into_placeholder(db_session):
    placeholder = models.User(email="legacy@example.com", firebase_uid=None)
    db_session.add(placeholder)
    db_session.commit()

    user, outcome = crud.sync_user(
        db_session, IdentityClaims(uid="uid-kim", email="kim@example.com", name="Kim")
    )
    assert outcome == "merged"
    assert user.id == placeholder.id
    assert user.email == "kim@example.com"
    assert user.firebase_uid == "uid-kim"


def test_sync_never_clears_subject_id(db_session):
    make_user(db_session, uid="uid-keep", email="keep@example.com")

    user, outcome = crud.sync_user(
        db_session, IdentityClaims(uid="undefined", email="keep@example.com")
    )
    assert outcome == "updated"
    assert user.firebase_uid == "uid-keep"


def test_sync_finds_user_by_uid_when_email_changed(db_session):
    original = make_user(db_session, uid="uid-move", email="old@example.com")

    user, outcome = crud.sync_user(
        db_session, IdentityClaims(uid="uid-move", email="new@example.com")
    )
    assert outcome == "updated"
    assert user.id == original.id
    assert user.email == "new@example.com"


def test_sync_retries_once_after_repair(db_session, monkeypatch):
    real_apply = crud._apply_sync
    calls = {"apply": 0, "repair": 0}

    def flaky_apply(db, claims):
        calls["apply"] += 1
        if calls["apply"] == 1:
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        return real_apply(db, claims)

    real_repair = crud.repair_user_identities

    def counting_repair(db):
        calls["repair"] += 1
        return real_repair(db)

    monkeypatch.setattr(crud, "_apply_sync", flaky_apply)
    monkeypatch.setattr(crud, "repair_user_identities", counting_repair)

    user, outcome = crud.sync_user(
        db_session, IdentityClaims(uid="uid-r", email="retry@example.com")
    )
    assert outcome == "created"
    assert user.firebase_uid == "uid-r"
    assert calls == {"apply": 2, "repair": 1}


def test_sync_surfaces_persistent_conflict(db_session):
    make_user(db_session, uid="uid-a", email="a@example.com")
    make_user(db_session, uid="uid-b", email="b@example.com")
    for email in ("p1@example.com", "p2@example.com"):
        db_session.add(models.User(email=email, firebase_uid=None))
    db_session.commit()

    with pytest.raises(StorageError):
        crud.sync_user(db_session, IdentityClaims(uid="uid-a", email="b@example.com"))

    remaining = db_session.query(models.User).filter(models.User.firebase_uid.is_(None)).all()
    assert len(remaining) == 1


def test_sync_without_email_raises(db_session):
    with pytest.raises(ValidationError):
        crud.sync_user(db_session, IdentityClaims(uid="uid-q", email=None))


def test_admin_migrate_requires_key(client, settings, monkeypatch):
    assert client.post("/admin/migrate").status_code == status.HTTP_401_UNAUTHORIZED

    monkeypatch.setattr(settings, "ADMIN_KEY", "s3cret")
    response = client.post("/admin/migrate", headers={"x-admin-key": "wrong"})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_admin_migrate_removes_duplicate_placeholders(client, db_session, settings, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", "s3cret")
    for email in ("x1@example.com", "x2@example.com", "x3@example.com"):
        db_session.add(models.User(email=email, firebase_uid=None))
    db_session.commit()

    response = client.post("/admin/migrate", headers={"x-admin-key": "s3cret"})
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {
        "message": "Migration completed successfully",
        "removedDuplicates": 2,
    }


def test_token_without_subject_cannot_claim_contacts(client):
    anonymous = create_access_token({"email": "alice@example.com"})
    response = client.post(
        "/contacts",
        json={"name": "Secret", "email": "secret@x.com"},
        headers={"Authorization": f"Bearer {anonymous}"},
    )
    assert response.status_code == status.HTTP_401_UNAUTHORIZED

    bob = auth_headers("uid-bob", "bob@example.com")
    assert client.get("/contacts", headers=bob).json()["data"] == []


def test_undefined_subject_is_rejected(client, db_session):
    response = client.get(
        "/contacts", headers=auth_headers("undefined", "ghost@example.com")
    )
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert db_session.query(models.User).count() == 0


def test_repair_keeps_placeholders_that_own_contacts(db_session):
    for email in ("first@example.com", "empty@example.com", "busy@example.com"):
        db_session.add(models.User(email=email, firebase_uid=None))
        db_session.commit()
    busy = crud.get_user_by_email(db_session, "busy@example.com")
    db_session.add(models.Contact(name="Mine", email="mine@x.com", owner_id=busy.id))
    db_session.commit()

    assert crud.repair_user_identities(db_session) == 1

    emails = {
        user.email
        for user in db_session.query(models.User).filter(models.User.firebase_uid.is_(None))
    }
    assert emails == {"first@example.com", "busy@example.com"}
    assert db_session.query(models.Contact).filter_by(email="mine@x.com").count() == 1


def test_memory_cache_entries_expire():
    now = [100.0]
    cache = auth.MemoryCache(clock=lambda: now[0])
    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(cache.set("identity:uid-1", "user-1", ex=60))
        assert loop.run_until_complete(cache.get("identity:uid-1")) == "user-1"
        now[0] += 61
        assert loop.run_until_complete(cache.get("identity:uid-1")) is None
        assert "identity:uid-1" not in cache.store
    finally:
        loop.close()
