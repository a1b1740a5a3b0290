from trainer_server.services.persona import persona_for_scenario
from trainer_server.services.turn_taking import ResponseCache, fingerprint


def test_fingerprint_is_deterministic():
    persona = persona_for_scenario("hotel-room-service")
    history = [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "What now?"}]
    assert fingerprint("my order is late", persona, history) == fingerprint("my order is late", persona, list(history))


def test_fingerprint_covers_text_persona_and_history():
    persona = persona_for_scenario("hotel-room-service")
    base = fingerprint("my order is late", persona, [])

    assert fingerprint("my order is late!", persona, []) != base
    assert fingerprint("my order is late", persona.with_intensity(2), []) != base
    assert fingerprint("my order is late", persona_for_scenario("retail-refund"), []) != base
    assert fingerprint("my order is late", persona, [{"role": "user", "content": "Hi"}]) != base


def test_cache_accumulates_fragments():
    cache = ResponseCache()
    assert cache.get("k") is None
    assert cache.append("k", "This ") == "This "
    assert cache.append("k", "is absurd.") == "This is absurd."
    assert "k" in cache
    assert len(cache) == 1


def test_cache_clear():
    cache = ResponseCache()
    cache.append("a", "one")
    cache.append("b", "two")
    cache.clear()
    assert len(cache) == 0
    assert cache.get("a") is None
