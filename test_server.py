"""
Tests for the directory and relay server, driven through the HTTP API.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from crypto import (
    Envelope,
    generate_keypair,
    derive_shared_secret,
    derive_session_key,
    seal,
    open_envelope,
)
from server.config import Settings
from server.errors import NotMember, Forbidden, GroupNotFound, QueueFull
from server.main import create_app
from server.service import ChatService
from server.store import MemoryStore, SqlStore


def make_api(**overrides) -> TestClient:
    settings = Settings(**overrides)
    service = ChatService(MemoryStore(), settings)
    return TestClient(create_app(settings, service))


@pytest.fixture
def api():
    return make_api()


def register(api: TestClient, user: str, with_prekey: bool = True):
    """Register a user and optionally publish a prekey; returns the prekey pair"""
    identity = generate_keypair()
    response = api.post("/register", json={"user": user, "identity_pub": identity.public_hex})
    assert response.status_code == 200, response.text
    if not with_prekey:
        return None
    return publish_prekey(api, user)


def publish_prekey(api: TestClient, user: str):
    prekey = generate_keypair()
    response = api.post("/upload_prekey", json={"user": user, "x25519_pub": prekey.public_hex})
    assert response.status_code == 200, response.text
    return prekey


def error_code(response) -> str:
    return response.json()["error"]


def test_register_and_prekey(api):
    """Registration is first-come and prekeys are replaceable"""
    register(api, "alice")

    response = api.post("/register", json={"user": "alice",
                                           "identity_pub": generate_keypair().public_hex})
    assert response.status_code == 409
    assert error_code(response) == "UserExists"

    response = api.post("/register", json={"user": "mallory", "identity_pub": "nothex"})
    assert response.status_code == 400
    assert error_code(response) == "MalformedKey"

    second = publish_prekey(api, "alice")
    assert api.get("/prekey/alice").json() == {"x25519_pub": second.public_hex}

    response = api.get("/prekey/nobody")
    assert response.status_code == 404
    assert error_code(response) == "PrekeyNotFound"

    response = api.post("/upload_prekey", json={"user": "nobody",
                                                 "x25519_pub": generate_keypair().public_hex})
    assert error_code(response) == "UserUnknown"


def test_private_message_roundtrip(api):
    """The relay hands back the opaque envelope the sender queued"""
    alice_prekey = register(api, "alice")
    bob_prekey = register(api, "bob")

    key = derive_session_key(derive_shared_secret(alice_prekey.private_key, bob_prekey.public_hex),
                             "alice", "bob")
    blob = seal(key, b"hi bob").encode()
    response = api.post("/send_message", json={"from_user": "alice", "to": "bob", "payload": blob})
    assert response.json()["success"] is True

    messages = api.post("/fetch_messages", json={"user": "bob"}).json()["messages"]
    assert len(messages) == 1
    assert messages[0]["sender"] == "alice"
    assert messages[0]["envelope"] == blob

    bob_key = derive_session_key(derive_shared_secret(bob_prekey.private_key, alice_prekey.public_hex),
                                 "bob", "alice")
    assert open_envelope(bob_key, Envelope.decode(messages[0]["envelope"])) == b"hi bob"


def test_fetch_drains_queue(api):
    """Every fetch is one-shot: a second fetch returns nothing"""
    register(api, "alice")
    register(api, "bob")
    for text in ("one", "two"):
        api.post("/send_message", json={"from_user": "alice", "to": "bob", "payload": text})

    first = api.post("/fetch_messages", json={"user": "bob"}).json()["messages"]
    assert [m["envelope"] for m in first] == ["one", "two"]
    assert api.post("/fetch_messages", json={"user": "bob"}).json()["messages"] == []


def test_private_and_group_queues_are_separate(api):
    """Fetching private messages leaves group traffic queued, and vice versa"""
    register(api, "alice")
    register(api, "bob")
    api.post("/create_group", json={"group_id": "g1", "creator": "alice", "members": ["bob"]})
    api.post("/send_group_message", json={"group_id": "g1", "from_user": "alice", "payload": "group"})
    api.post("/send_message", json={"from_user": "alice", "to": "bob", "payload": "private"})

    private = api.post("/fetch_messages", json={"user": "bob"}).json()["messages"]
    assert [m["envelope"] for m in private] == ["private"]

    group = api.post("/fetch_group_messages", json={"group_id": "g1", "user": "bob"}).json()
    assert [m["envelope"] for m in group["messages"]] == ["group"]
    assert group["messages"][0]["group_version"] == 1
    assert group["current_version"] == 1

    assert api.post("/fetch_group_messages",
                    json={"group_id": "g1", "user": "bob"}).json()["messages"] == []


def test_clear_chat(api):
    register(api, "alice")
    register(api, "bob")
    api.post("/send_message", json={"from_user": "alice", "to": "bob", "payload": "x"})

    assert api.post("/clear_chat", json={"user": "bob"}).json() == {"success": True, "cleared": 1}
    assert api.post("/fetch_messages", json={"user": "bob"}).json()["messages"] == []


def test_pending_member_joins_on_register(api):
    """An invite made before registration is honoured at registration"""
    register(api, "alice")
    response = api.post("/create_group", json={"group_id": "g1", "creator": "alice",
                                               "members": ["bob"]}).json()
    assert response["members"] == ["alice"]
    assert response["pending_members"] == ["bob"]
    assert response["version"] == 1

    bob = api.post("/register", json={"user": "bob",
                                      "identity_pub": generate_keypair().public_hex}).json()
    assert bob["auto_joined_groups"] == ["g1"]

    info = api.get("/group_info/g1").json()
    assert info["members"] == ["alice", "bob"]
    assert info["pending_members"] == []
    assert info["version"] == 2


def test_send_before_prekey(api):
    """Delivery needs a prekey; publishing one makes the retry succeed"""
    register(api, "alice")
    register(api, "bob", with_prekey=False)

    body = {"from_user": "alice", "to": "bob", "payload": "hello"}
    response = api.post("/send_message", json=body)
    assert response.status_code == 409
    assert error_code(response) == "RecipientNoPrekey"

    publish_prekey(api, "bob")
    assert api.post("/send_message", json=body).json()["success"] is True

    response = api.post("/send_message", json={"from_user": "alice", "to": "ghost", "payload": "x"})
    assert response.status_code == 404
    assert error_code(response) == "RecipientUnknown"


def test_group_message_fanout(api):
    """Every other member gets exactly one copy; the sender gets none"""
    register(api, "alice")
    api.post("/create_group", json={"group_id": "g1", "creator": "alice",
                                    "members": ["bob", "carol"]})
    register(api, "bob")
    register(api, "carol")
    assert api.get("/group_info/g1").json()["version"] == 3

    result = api.post("/send_group_message", json={"group_id": "g1", "from_user": "alice",
                                                   "payload": "bundle", "expected_version": 3}).json()
    assert sorted(result["delivered_to"]) == ["bob", "carol"]
    assert result["failed"] == []
    assert result["group_version"] == 3
    assert result["stale"] is False

    for member in ("bob", "carol"):
        messages = api.post("/fetch_group_messages", json={"group_id": "g1", "user": member}).json()
        assert len(messages["messages"]) == 1
        assert messages["messages"][0]["sender"] == "alice"
    alice = api.post("/fetch_group_messages", json={"group_id": "g1", "user": "alice"}).json()
    assert alice["messages"] == []


def test_group_send_reports_failures_and_stale_version(api):
    register(api, "alice")
    register(api, "bob")
    register(api, "dave", with_prekey=False)
    api.post("/create_group", json={"group_id": "g1", "creator": "alice", "members": ["bob", "dave"]})

    result = api.post("/send_group_message", json={"group_id": "g1", "from_user": "alice",
                                                   "payload": "x", "expected_version": 0}).json()
    assert result["delivered_to"] == ["bob"]
    assert result["failed"] == ["dave"]
    assert result["failure_reasons"] == {"dave": "RecipientNoPrekey"}
    assert result["stale"] is True

    response = api.post("/send_group_message", json={"group_id": "g1", "from_user": "mallory",
                                                     "payload": "x"})
    assert response.status_code == 403
    assert error_code(response) == "Forbidden"

    response = api.post("/send_group_message", json={"group_id": "nope", "from_user": "alice",
                                                     "payload": "x"})
    assert error_code(response) == "GroupNotFound"


def test_version_is_monotonic(api):
    """Each membership change bumps the version by exactly one"""
    for user in ("alice", "bob", "carol"):
        register(api, user)
    api.post("/create_group", json={"group_id": "g1", "creator": "alice", "members": []})

    versions = [api.get("/group_info/g1").json()["version"]]
    api.post("/force_add_to_group", json={"group_id": "g1", "user": "bob"})
    versions.append(api.get("/group_info/g1").json()["version"])
    api.post("/force_add_to_group", json={"group_id": "g1", "user": "carol"})
    versions.append(api.get("/group_info/g1").json()["version"])
    api.post("/send_group_message", json={"group_id": "g1", "from_user": "alice", "payload": "x"})
    versions.append(api.get("/group_info/g1").json()["version"])
    api.post("/group_remove_member", json={"group_id": "g1", "user_to_remove": "bob",
                                           "removed_by": "alice"})
    versions.append(api.get("/group_info/g1").json()["version"])

    assert versions == [1, 2, 3, 3, 4]

    response = api.post("/force_add_to_group", json={"group_id": "g1", "user": "carol"})
    assert error_code(response) == "AlreadyMember"
    assert api.get("/group_info/g1").json()["version"] == 4


def test_membership_invariant(api):
    """Members and pending members never overlap and the creator is a member"""
    register(api, "alice")
    api.post("/create_group", json={"group_id": "g1", "creator": "alice",
                                    "members": ["alice", "bob", "bob", "carol"]})
    api.post("/force_add_to_group", json={"group_id": "g1", "user": "bob"})

    info = api.get("/group_info/g1").json()
    assert info["members"] == ["alice", "bob"]
    assert info["pending_members"] == ["carol"]
    assert not set(info["members"]) & set(info["pending_members"])
    assert info["creator"] in info["members"]

    # bob's invite is stale after the forced add and is simply dropped
    bob = api.post("/register", json={"user": "bob", "identity_pub": generate_keypair().public_hex})
    assert bob.json()["auto_joined_groups"] == []


def test_create_group_errors(api):
    response = api.post("/create_group", json={"group_id": "g1", "creator": "ghost", "members": []})
    assert error_code(response) == "UnknownCreator"

    register(api, "alice")
    api.post("/create_group", json={"group_id": "g1", "creator": "alice", "members": []})
    response = api.post("/create_group", json={"group_id": "g1", "creator": "alice", "members": []})
    assert response.status_code == 409
    assert error_code(response) == "GroupExists"


def test_remove_member_rules(api):
    for user in ("alice", "bob", "carol"):
        register(api, user)
    api.post("/create_group", json={"group_id": "g1", "creator": "alice",
                                    "members": ["bob", "carol", "erin"]})

    # only the creator or the target themself may remove
    response = api.post("/group_remove_member", json={"group_id": "g1", "user_to_remove": "carol",
                                                      "removed_by": "bob"})
    assert response.status_code == 403

    response = api.post("/group_remove_member", json={"group_id": "g1", "user_to_remove": "zed",
                                                      "removed_by": "alice"})
    assert response.status_code == 404
    assert error_code(response) == "NotMember"
    assert api.get("/group_info/g1").json()["version"] == 1

    # removing a pending member withdraws the invite
    result = api.post("/group_remove_member", json={"group_id": "g1", "user_to_remove": "erin",
                                                    "removed_by": "alice"}).json()
    assert result["version"] == 2
    assert api.get("/group_info/g1").json()["pending_members"] == []

    result = api.post("/group_remove_member", json={"group_id": "g1", "user_to_remove": "bob",
                                                    "removed_by": "bob"}).json()
    assert result["members"] == ["alice", "carol"]
    assert result["group_deleted"] is False

    response = api.post("/fetch_group_messages", json={"group_id": "g1", "user": "bob"})
    assert error_code(response) == "Forbidden"


def test_creator_succession_and_deletion(api):
    for user in ("alice", "bob", "carol"):
        register(api, user)
    api.post("/create_group", json={"group_id": "g1", "creator": "alice", "members": ["carol", "bob"]})

    result = api.post("/group_remove_member", json={"group_id": "g1", "user_to_remove": "alice",
                                                    "removed_by": "alice"}).json()
    assert result["new_creator"] == "carol"
    assert result["creator"] == "carol"

    api.post("/group_remove_member", json={"group_id": "g1", "user_to_remove": "bob",
                                           "removed_by": "carol"})
    result = api.post("/group_remove_member", json={"group_id": "g1", "user_to_remove": "carol",
                                                    "removed_by": "carol"}).json()
    assert result["group_deleted"] is True

    response = api.get("/group_info/g1")
    assert response.status_code == 404
    assert error_code(response) == "GroupNotFound"


def test_alphabetical_succession():
    api = make_api(creator_succession="alphabetical")
    for user in ("alice", "bob", "carol"):
        register(api, user)
    api.post("/create_group", json={"group_id": "g1", "creator": "alice", "members": ["carol", "bob"]})

    result = api.post("/group_remove_member", json={"group_id": "g1", "user_to_remove": "alice",
                                                    "removed_by": "alice"}).json()
    assert result["new_creator"] == "bob"


def test_queue_full():
    api = make_api(max_queue_length=2)
    register(api, "alice")
    register(api, "bob")
    body = {"from_user": "alice", "to": "bob", "payload": "x"}
    assert api.post("/send_message", json=body).status_code == 200
    assert api.post("/send_message", json=body).status_code == 200

    response = api.post("/send_message", json=body)
    assert response.status_code == 429
    assert error_code(response) == "QueueFull"

    api.post("/fetch_messages", json={"user": "bob"})
    assert api.post("/send_message", json=body).status_code == 200


def test_check_invites_and_user_groups(api):
    register(api, "alice")
    api.post("/create_group", json={"group_id": "g1", "creator": "alice", "members": ["bob"]})
    api.post("/create_group", json={"group_id": "g2", "creator": "alice", "members": []})

    response = api.post("/auto_join_groups", json={"user": "bob"})
    assert error_code(response) == "UserUnknown"

    assert api.get("/status").json()["pending_invites"] == 1

    # registration already consumed the invite
    api.post("/register", json={"user": "bob", "identity_pub": generate_keypair().public_hex})
    result = api.post("/auto_join_groups", json={"user": "bob"}).json()
    assert result == {"joined_groups": [], "had_pending_invites": False}

    groups = api.get("/user_groups/bob").json()["groups"]
    assert list(groups) == ["g1"]
    assert groups["g1"]["version"] == 2
    assert set(api.get("/user_groups/alice").json()["groups"]) == {"g1", "g2"}


def test_status(api):
    register(api, "alice")
    register(api, "bob", with_prekey=False)
    register(api, "carol")
    api.post("/send_message", json={"from_user": "alice", "to": "carol", "payload": "x"})

    status = api.get("/status").json()
    assert status["server"] == "online"
    assert status["users"] == 3
    assert status["with_prekeys"] == 2
    assert status["queued_messages"] == 1


def test_request_validation(api):
    response = api.post("/register", json={"user": "", "identity_pub": "00"})
    assert response.status_code == 422


def test_invitee_registering_during_create_joins(monkeypatch):
    """Registration racing group creation never leaves the user pending"""
    service = ChatService(MemoryStore(), Settings())
    service.register("alice", generate_keypair().public_hex)
    add_invite = service.groups._add_invite

    def register_first(user, group_id):
        service.register(user, generate_keypair().public_hex)
        add_invite(user, group_id)

    monkeypatch.setattr(service.groups, "_add_invite", register_first)
    service.create_group("g1", "alice", ["bob"])

    info = service.group_info("g1")
    assert info["members"] == ["alice", "bob"]
    assert info["pending_members"] == []


def test_invitee_registering_while_group_is_saved_joins(monkeypatch):
    service = ChatService(MemoryStore(), Settings())
    service.register("alice", generate_keypair().public_hex)
    add_invite = service.groups._add_invite
    workers = []

    def register_after(user, group_id):
        add_invite(user, group_id)
        worker = threading.Thread(target=service.register,
                                  args=(user, generate_keypair().public_hex))
        worker.start()
        workers.append(worker)

    monkeypatch.setattr(service.groups, "_add_invite", register_after)
    service.create_group("g1", "alice", ["bob"])
    for worker in workers:
        worker.join(timeout=5)

    info = service.group_info("g1")
    assert info["members"] == ["alice", "bob"]
    assert info["pending_members"] == []


def test_concurrent_membership_changes_get_distinct_versions():
    service = ChatService(MemoryStore(), Settings())
    service.register("alice", generate_keypair().public_hex)
    service.create_group("g1", "alice", [])
    users = [f"user{i}" for i in range(20)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        versions = list(pool.map(lambda user: service.force_add_member("g1", user)["version"], users))

    assert sorted(versions) == list(range(2, 22))
    info = service.group_info("g1")
    assert info["version"] == 21
    assert sorted(info["members"]) == sorted(["alice"] + users)


def test_fetch_group_keeps_messages_when_group_disappears(monkeypatch):
    """Messages drained just before the group is deleted are still returned"""
    service = ChatService(MemoryStore(), Settings())
    for user in ("alice", "bob"):
        service.register(user, generate_keypair().public_hex)
        service.publish_prekey(user, generate_keypair().public_hex)
    service.create_group("g1", "alice", ["bob"])
    service.send_group("g1", "alice", "x")

    drain = service.router._drain

    def drain_then_disband(user, wanted):
        items = drain(user, wanted)
        service.remove_member("g1", "alice", "alice")
        service.remove_member("g1", "bob", "bob")
        return items

    monkeypatch.setattr(service.router, "_drain", drain_then_disband)
    result = service.fetch_group("g1", "bob")

    assert [m["envelope"] for m in result["messages"]] == ["x"]
    assert result["current_version"] == 1
    assert result["group_members"] == ["alice", "bob"]
    with pytest.raises(GroupNotFound):
        service.group_info("g1")


def test_service_errors_on_sql_store():
    """The service runs unchanged on the SQLAlchemy backend"""
    store = SqlStore("sqlite://")
    service = ChatService(store, Settings(max_queue_length=1))
    try:
        for user in ("alice", "bob"):
            service.register(user, generate_keypair().public_hex)
            service.publish_prekey(user, generate_keypair().public_hex)

        service.create_group("g1", "alice", ["bob", "carol"])
        assert service.group_info("g1")["pending_members"] == ["carol"]

        service.send_group("g1", "alice", "x")
        with pytest.raises(QueueFull):
            service.send_private("alice", "bob", "y")
        assert service.send_group("g1", "alice", "z")["failure_reasons"] == {"bob": "QueueFull"}

        assert [m["envelope"] for m in service.fetch_group("g1", "bob")["messages"]] == ["x"]

        with pytest.raises(NotMember):
            service.remove_member("g1", "dave", "alice")
        with pytest.raises(Forbidden):
            service.fetch_group("g1", "carol")

        service.remove_member("g1", "alice", "alice")
        service.remove_member("g1", "bob", "bob")
        with pytest.raises(GroupNotFound):
            service.group_info("g1")
        assert service.status()["groups"] == 0
    finally:
        store.close()
