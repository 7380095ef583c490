"""Tests for canonicalization, event hash chaining and Ed25519 signing."""

from __future__ import annotations

from healthvault.core.crypto.canonicalization import canonicalize_jcs_bytes, sha256_hex_jcs
from healthvault.core.crypto.hash_chain import GENESIS_HASH, compute_event_hash
from healthvault.core.crypto.signing import (
    generate_signing_keypair,
    load_private_key,
    sign_message,
    verify_message,
)
from healthvault.core.crypto.verification import verify_hash_chain


def test_sha256_hex_jcs_is_order_invariant() -> None:
    left = {"b": 2, "a": {"y": 2, "x": 1}}
    right = {"a": {"x": 1, "y": 2}, "b": 2}
    assert sha256_hex_jcs(left) == sha256_hex_jcs(right)


def test_canonicalize_jcs_bytes_has_no_whitespace() -> None:
    assert canonicalize_jcs_bytes({"z": 1, "a": [1, 2]}) == b'{"a":[1,2],"z":1}'


class TestComputeEventHash:
    """Tests for SHA-256 event hash computation."""

    def test_basic_hash(self) -> None:
        result = compute_event_hash({"event_type": "RecordCreated"}, GENESIS_HASH)
        assert len(result) == 64

    def test_different_prev_hash_different_result(self) -> None:
        data = {"event_type": "DataUploaded"}
        assert compute_event_hash(data, GENESIS_HASH) != compute_event_hash(data, "a" * 64)

    def test_chain_integrity(self) -> None:
        """Events form a chain where each hash depends on the previous."""
        e1 = compute_event_hash({"seq": 1}, GENESIS_HASH)
        e2 = compute_event_hash({"seq": 2}, e1)

        e1_alt = compute_event_hash({"seq": 1, "tampered": True}, GENESIS_HASH)
        assert compute_event_hash({"seq": 2}, e1_alt) != e2
        assert compute_event_hash({"seq": 2}, e1) == e2


class TestVerifyHashChain:
    """Tests for whole-chain verification over event dicts."""

    @staticmethod
    def _chain(*payloads: dict[str, object]) -> list[dict[str, object]]:
        events: list[dict[str, object]] = []
        prev = GENESIS_HASH
        for seq, payload in enumerate(payloads):
            event_hash = compute_event_hash(dict(payload), prev)
            events.append(
                {
                    **payload,
                    "event_hash": event_hash,
                    "prev_event_hash": prev,
                    "chain_sequence": seq,
                }
            )
            prev = event_hash
        return events

    def test_intact_chain(self) -> None:
        result = verify_hash_chain(self._chain({"n": 1}, {"n": 2}, {"n": 3}))
        assert result.is_valid
        assert result.verified_count == 3

    def test_tampered_event_breaks_chain(self) -> None:
        events = self._chain({"n": 1}, {"n": 2}, {"n": 3})
        events[1]["n"] = 99

        result = verify_hash_chain(events)

        assert not result.is_valid
        assert result.first_break_at == 1
        assert result.verified_count == 1

    def test_dropped_event_breaks_chain(self) -> None:
        events = self._chain({"n": 1}, {"n": 2}, {"n": 3})
        del events[1]

        result = verify_hash_chain(events)

        assert not result.is_valid
        assert result.first_break_at == 1
        assert "chain_sequence" in result.errors[0]

    def test_missing_hash_breaks_chain(self) -> None:
        events = self._chain({"n": 1})
        del events[0]["event_hash"]

        result = verify_hash_chain(events)

        assert not result.is_valid
        assert result.first_break_at == 0


class TestSignAndVerify:
    """Tests for signing and verification round-trip."""

    def test_sign_and_verify(self) -> None:
        private_pem, public_pem = generate_signing_keypair()
        signature = sign_message(b"tx-bytes", load_private_key(private_pem))
        assert verify_message(b"tx-bytes", signature, public_pem)

    def test_wrong_data_fails(self) -> None:
        private_pem, public_pem = generate_signing_keypair()
        signature = sign_message(b"tx-bytes", load_private_key(private_pem))
        assert not verify_message(b"other-bytes", signature, public_pem)

    def test_wrong_key_fails(self) -> None:
        priv1, _pub1 = generate_signing_keypair()
        _priv2, pub2 = generate_signing_keypair()
        signature = sign_message(b"tx-bytes", load_private_key(priv1))
        assert not verify_message(b"tx-bytes", signature, pub2)

    def test_malformed_inputs_are_invalid_not_errors(self) -> None:
        _private_pem, public_pem = generate_signing_keypair()
        assert not verify_message(b"tx-bytes", "not base64!", public_pem)
        assert not verify_message(b"tx-bytes", "AAAA", "not a pem")
