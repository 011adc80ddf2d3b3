import asyncio
import base64
import os

import pytest

from volumebot.errors import StoreDecryptError
from volumebot.models import AwaitingState, PanelRef, PriceCache, RunStats, Session, TokenInfo
from volumebot.store import NONCE_SIZE, TAG_SIZE, SessionStore, decrypt_blob, encrypt_blob
from volumebot.wallets import Wallet

KEY = bytes(range(32))


@pytest.mark.parametrize("payload", [b"", b"x", b"{}", os.urandom(1000)])
def test_encrypt_decrypt_round_trip(payload):
    blob = encrypt_blob(KEY, payload)
    assert len(blob) == NONCE_SIZE + TAG_SIZE + len(payload)
    assert decrypt_blob(KEY, blob) == payload


def test_nonce_is_fresh_per_write():
    assert encrypt_blob(KEY, b"same")[:NONCE_SIZE] != encrypt_blob(KEY, b"same")[:NONCE_SIZE]


def test_any_flipped_bit_fails_authentication():
    blob = encrypt_blob(KEY, b'{"42": {"main": "secret"}}')
    for i in range(len(blob)):
        for bit in (0, 7):
            tampered = bytearray(blob)
            tampered[i] ^= 1 << bit
            with pytest.raises(StoreDecryptError):
                decrypt_blob(KEY, bytes(tampered))


def test_wrong_key_and_truncation_fail():
    blob = encrypt_blob(KEY, b"data")
    with pytest.raises(StoreDecryptError):
        decrypt_blob(os.urandom(32), blob)
    with pytest.raises(StoreDecryptError):
        decrypt_blob(KEY, blob[:10])


def test_missing_file_loads_empty(tmp_path):
    st = SessionStore(str(tmp_path / "nested" / "sessions.enc"), KEY)
    assert st.load() == {}
    assert st.ids() == []


def _full_session() -> Session:
    s = Session.fresh()
    s.secondary_wallets = [Wallet.generate(), Wallet.generate()]
    s.token_mint = "MintAddr111"
    s.buy_rate = 20
    s.config.max_wallets = 7
    s.awaiting = AwaitingState.WITHDRAW_ADDRESS
    s.withdraw_target = "Target111"
    s.stats = RunStats(initial_balance=100, start_time=5, action_count=3, final_balance=40)
    s.price_cache = PriceCache(timestamp=10, data=TokenInfo(mint="MintAddr111", name="T", price=0.5, rank=3))
    s.panel = PanelRef(chat_id=42, message_id=9)
    s.deposit_watcher_active = True
    return s


@pytest.mark.asyncio
async def test_save_and_load_round_trip(tmp_path):
    path = str(tmp_path / "sessions.enc")
    st = SessionStore(path, KEY)
    st.load()
    original = _full_session()
    st.put(42, original)
    await st.save()

    loaded = SessionStore(path, KEY).load()
    s = loaded["42"]
    assert s.main_wallet.secret == original.main_wallet.secret
    assert [w.address for w in s.secondary_wallets] == [w.address for w in original.secondary_wallets]
    assert s.token_mint == "MintAddr111"
    assert s.buy_rate == 20
    assert s.config.max_wallets == 7
    assert s.awaiting is AwaitingState.WITHDRAW_ADDRESS
    assert s.withdraw_target == "Target111"
    assert s.stats == original.stats
    assert s.price_cache.data.price == 0.5
    assert s.panel == PanelRef(chat_id=42, message_id=9)
    assert s.deposit_watcher_active is True
    assert s.runner_active is False


@pytest.mark.asyncio
async def test_file_is_not_plaintext(tmp_path):
    path = str(tmp_path / "sessions.enc")
    st = SessionStore(path, KEY)
    st.load()
    s = Session.fresh()
    s.token_mint = "VisibleMint"
    st.put("1", s)
    await st.save()
    raw = base64.b64decode(open(path, "rb").read())
    assert b"VisibleMint" not in raw
    assert s.main_wallet.to_b64().encode() not in raw


@pytest.mark.asyncio
async def test_tampered_file_is_fatal_on_load(tmp_path):
    path = str(tmp_path / "sessions.enc")
    st = SessionStore(path, KEY)
    st.load()
    st.put("1", Session.fresh())
    await st.save()

    blob = bytearray(base64.b64decode(open(path, "rb").read()))
    blob[-1] ^= 0x01
    with open(path, "wb") as f:
        f.write(base64.b64encode(bytes(blob)))

    with pytest.raises(StoreDecryptError):
        SessionStore(path, KEY).load()


def test_garbage_file_is_fatal_on_load(tmp_path):
    path = tmp_path / "sessions.enc"
    path.write_text("not base64 at all!!")
    with pytest.raises(StoreDecryptError):
        SessionStore(str(path), KEY).load()


@pytest.mark.asyncio
async def test_concurrent_saves_leave_a_readable_file(tmp_path):
    path = str(tmp_path / "sessions.enc")
    st = SessionStore(path, KEY)
    st.load()
    for i in range(5):
        st.put(i, Session.fresh())

    async def bump(i):
        st.get(i).buy_rate = i + 10
        await st.save()

    await asyncio.gather(*(bump(i) for i in range(5)), *(st.save() for _ in range(10)))

    loaded = SessionStore(path, KEY).load()
    assert sorted(loaded) == ["0", "1", "2", "3", "4"]
    assert [loaded[str(i)].buy_rate for i in range(5)] == [10, 11, 12, 13, 14]
    assert not os.path.exists(path + ".tmp")


@pytest.mark.asyncio
async def test_mutate_applies_and_persists(tmp_path):
    path = str(tmp_path / "sessions.enc")
    st = SessionStore(path, KEY)
    st.load()
    st.put("7", Session.fresh())
    await st.mutate("7", lambda s: setattr(s, "buy_rate", 30))
    assert SessionStore(path, KEY).load()["7"].buy_rate == 30


def test_store_rejects_short_key(tmp_path):
    with pytest.raises(ValueError):
        SessionStore(str(tmp_path / "x.enc"), b"short")
