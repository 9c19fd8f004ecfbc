from concurrent.futures import ThreadPoolExecutor

from signaling.tokens import TOKEN_TTL_SECONDS, TokenStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_default_ttl_is_ten_minutes():
    assert TOKEN_TTL_SECONDS == 600
    assert TokenStore().ttl == 600


def test_consume_is_one_time():
    store = TokenStore()
    token_id = store.store("OFFER_SDP_X")
    assert store.consume(token_id) == "OFFER_SDP_X"
    assert store.consume(token_id) is None
    assert len(store) == 0


def test_unknown_id_is_not_found():
    assert TokenStore().consume("nope") is None


def test_ids_are_unique():
    store = TokenStore()
    ids = {store.store("x") for _ in range(100)}
    assert len(ids) == 100


def test_expired_token_cannot_be_consumed():
    clock = FakeClock()
    store = TokenStore(ttl=120, clock=clock)
    token_id = store.store("payload")
    clock.now += 120
    assert store.consume(token_id) is None
    assert store.consume(token_id) is None


def test_token_just_before_expiry_is_still_live():
    clock = FakeClock()
    store = TokenStore(ttl=120, clock=clock)
    token_id = store.store("payload")
    clock.now += 119.9
    assert store.consume(token_id) == "payload"


def test_contains_does_not_consume():
    store = TokenStore()
    token_id = store.store("payload")
    assert store.contains(token_id)
    assert store.contains(token_id)
    assert store.consume(token_id) == "payload"
    assert not store.contains(token_id)


def test_contains_drops_expired_entry():
    clock = FakeClock()
    store = TokenStore(ttl=10, clock=clock)
    token_id = store.store("payload")
    clock.now += 11
    assert not store.contains(token_id)
    assert len(store) == 0


def test_purge_expired_only_removes_old_entries():
    clock = FakeClock()
    store = TokenStore(ttl=60, clock=clock)
    old = store.store("old")
    clock.now += 30
    fresh = store.store("fresh")
    clock.now += 31
    assert store.purge_expired() == 1
    assert store.consume(old) is None
    assert store.consume(fresh) == "fresh"


def test_concurrent_consumers_only_one_wins():
    store = TokenStore()
    token_id = store.store("payload")
    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(lambda _: store.consume(token_id), range(64)))
    assert results.count("payload") == 1
    assert results.count(None) == 63
