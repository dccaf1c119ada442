import asyncio

from apps.api.fingerprint import FingerprintStore, compute_env_fingerprint
from tests.fakes import FakeSandbox


def test_fingerprint_is_sorted_key_length_pairs() -> None:
    assert compute_env_fingerprint({"B": "hello", "A": "abc"}) == "A:3,B:5"
    assert compute_env_fingerprint({}) == ""


def test_fingerprint_ignores_insertion_order() -> None:
    a = {"OPENAI_API_KEY": "sk-1", "ANTHROPIC_API_KEY": "sk-ant", "Z": ""}
    b = {"Z": "", "ANTHROPIC_API_KEY": "sk-ant", "OPENAI_API_KEY": "sk-1"}
    assert compute_env_fingerprint(a) == compute_env_fingerprint(b)


def test_fingerprint_detects_added_removed_and_resized_values() -> None:
    base = {"A": "abc", "B": "hello"}
    fp = compute_env_fingerprint(base)
    assert compute_env_fingerprint({**base, "C": "xy"}) != fp
    assert compute_env_fingerprint({"A": "abc"}) != fp
    assert compute_env_fingerprint({"A": "abcd", "B": "hello"}) != fp


def test_fingerprint_misses_same_length_value_change() -> None:
    assert compute_env_fingerprint({"TOKEN": "aaaa"}) == compute_env_fingerprint({"TOKEN": "bbbb"})


def test_fingerprint_never_contains_values() -> None:
    fp = compute_env_fingerprint({"SECRET": "super-secret-value"})
    assert "super-secret-value" not in fp
    assert fp == "SECRET:18"


def test_store_round_trips_through_sandbox_commands() -> None:
    sandbox = FakeSandbox()
    store = FingerprintStore(sandbox, "/tmp/clawbox-env-hash")

    async def _run():
        assert await store.read() is None
        assert await store.persist("A:3,B:5") is True
        return await store.read()

    assert asyncio.run(_run()) == "A:3,B:5"
    assert any(c.startswith("printf") and "/tmp/clawbox-env-hash" in c for c in sandbox.commands)


def test_store_failures_degrade_to_absent() -> None:
    sandbox = FakeSandbox()
    sandbox.fingerprint = "A:3"
    sandbox.fingerprint_error = RuntimeError("sandbox unavailable")
    store = FingerprintStore(sandbox, "/tmp/clawbox-env-hash")

    assert asyncio.run(store.read()) is None
    assert asyncio.run(store.persist("A:3,B:5")) is False
