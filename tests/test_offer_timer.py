from psiagenda.services.offer_timer import JsonFileStore, MappingStore, MemoryStore, OfferTimer, timer_key


class Clock:
    def __init__(self, t=1_700_000_000.0):
        self.t = t

    def __call__(self):
        return self.t


def test_timer_counts_down_and_survives_reload():
    clock = Clock()
    store = MemoryStore()
    OfferTimer(store, clock).start("svc-1", 15)

    clock.t += 61.5
    before = OfferTimer(store, clock).remaining_seconds("svc-1")
    # "recarregar a página": nova instância, mesmo store; start não reinicia o prazo
    reloaded = OfferTimer(store, clock)
    reloaded.start("svc-1", 15)
    clock.t += 0.4
    after = reloaded.remaining_seconds("svc-1")

    assert before == 15 * 60 - 62
    assert after <= before


def test_timer_expires_and_clears_key():
    clock = Clock()
    store = MemoryStore()
    timer = OfferTimer(store, clock)
    timer.start(None, 1)
    assert store.get(timer_key(None)) is not None

    clock.t += 60
    assert timer.remaining_seconds(None) == 0
    assert store.get("checkoutTimer_default") is None


def test_expired_deadline_restarts():
    clock = Clock()
    store = MemoryStore()
    timer = OfferTimer(store, clock)
    first = timer.start("svc", 1)
    clock.t += 120
    second = timer.start("svc", 1)
    assert second > first
    assert timer.remaining_seconds("svc") == 60


def test_garbage_in_store_is_ignored():
    store = MemoryStore()
    store.set(timer_key("svc"), "nao-e-numero")
    assert OfferTimer(store, Clock()).remaining_seconds("svc") == 0


def test_format_remaining():
    assert OfferTimer.format_remaining(0) == "00:00"
    assert OfferTimer.format_remaining(61) == "01:01"
    assert OfferTimer.format_remaining(900) == "15:00"
    assert OfferTimer.format_remaining(-5) == "00:00"


def test_json_file_store_persists_between_instances(tmp_path):
    path = tmp_path / "timer" / "t.json"
    clock = Clock()
    OfferTimer(JsonFileStore(str(path)), clock).start("svc", 10)
    assert OfferTimer(JsonFileStore(str(path)), clock).remaining_seconds("svc") == 600


def test_mapping_store_wraps_dicts():
    session = {}
    timer = OfferTimer(MappingStore(session), Clock())
    timer.start("svc", 2)
    assert "checkoutTimer_svc" in session
    timer.clear("svc")
    assert session == {}
