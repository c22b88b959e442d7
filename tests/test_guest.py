import pytest

from semantle import guest
from semantle.guest import GuestIdentity, Identity, is_guest_id, new_guest_id, sign_guest_token, verify_guest_token


def test_new_guest_id_format_and_uniqueness():
    ids = {new_guest_id() for _ in range(200)}
    assert len(ids) == 200
    for gid in ids:
        assert gid.startswith("guest_")
        assert is_guest_id(gid)
        _, ts, rand = gid.split("_")
        int(ts, 36)
        assert len(rand) == 12


def test_identity_requires_exactly_one_id():
    with pytest.raises(ValueError):
        Identity()
    with pytest.raises(ValueError):
        Identity(user_id="u1", guest_id="guest_a_b")
    u = Identity.user("u1")
    assert u.key == "u1" and not u.is_guest
    g = Identity.guest()
    assert g.is_guest and g.key == g.guest_id


def test_guest_identity_mints_once_or_restores():
    holder = GuestIdentity()
    assert not holder.minted
    first = holder.get()
    assert holder.get() is first
    assert holder.minted and is_guest_id(first.guest_id)
    assert GuestIdentity().get() != first

    gid = new_guest_id()
    restored = GuestIdentity(gid)
    assert restored.get() == Identity.guest(gid)
    assert not restored.minted


def test_guest_token_sign_and_verify(monkeypatch):
    monkeypatch.setattr(guest.config, "SESSION_SECRET", "test-secret")
    gid = new_guest_id()
    token = sign_guest_token(gid)
    assert verify_guest_token(token) == gid

    # Tamper token -> verify fails
    assert verify_guest_token(gid + ".deadbeef") is None
    assert verify_guest_token("") is None
    assert verify_guest_token("no-dot") is None

    # a different secret invalidates old tokens
    monkeypatch.setattr(guest.config, "SESSION_SECRET", "rotated")
    assert verify_guest_token(token) is None
