"""Tests for the anchor transaction codec."""

import pytest

from certanchor.chain.transaction import (
    ANCHOR_TAG,
    MAX_OP_RETURN_PAYLOAD,
    OP_RETURN,
    Transaction,
    TxIn,
    TxOut,
    anchor_payload,
    decode_der_signature,
    encode_der_signature,
    encode_varint,
    estimate_size,
    hash160,
    op_return_script,
    p2pkh_script,
    parse_op_return,
    push_data,
    split_anchor_payload,
)
from certanchor.models.anchor import Outpoint


ROOT = "ab" * 32


def _tx() -> Transaction:
    return Transaction(
        inputs=(TxIn(Outpoint("11" * 32, 1)),),
        outputs=(
            TxOut(0, op_return_script(anchor_payload(ROOT))),
            TxOut(5000, p2pkh_script(b"\x22" * 20)),
        ),
    )


class TestScripts:
    def test_push_data_sizes(self) -> None:
        assert push_data(b"\x01" * 3)[:1] == b"\x03"
        assert push_data(b"\x01" * 76)[:2] == b"\x4c\x4c"
        assert push_data(b"\x01" * 300)[:3] == b"\x4d\x2c\x01"

    def test_p2pkh_layout(self) -> None:
        script = p2pkh_script(b"\x00" * 20)
        assert script.hex() == "76a914" + "00" * 20 + "88ac"

    def test_p2pkh_rejects_bad_hash(self) -> None:
        with pytest.raises(ValueError):
            p2pkh_script(b"\x00" * 19)

    def test_op_return_round_trip(self) -> None:
        payload = anchor_payload(ROOT)
        script = op_return_script(payload)
        assert script[0] == OP_RETURN
        assert parse_op_return(script) == payload

    def test_op_return_payload_limit(self) -> None:
        with pytest.raises(ValueError):
            op_return_script(b"\x00" * (MAX_OP_RETURN_PAYLOAD + 1))

    def test_parse_op_return_rejects_other_scripts(self) -> None:
        assert parse_op_return(p2pkh_script(b"\x00" * 20)) is None
        assert parse_op_return(b"\x6a\x05abc") is None  # truncated push

    def test_hash160_known_vector(self) -> None:
        # hash160 of the empty string
        assert hash160(b"").hex() == "b472a266d0bd89c13706a4132ccfb16f7c3b9fcb"


class TestAnchorPayload:
    def test_layout(self) -> None:
        payload = anchor_payload(ROOT)
        assert payload == b"CRTA\x01" + bytes.fromhex(ROOT)
        assert len(payload) == 37

    def test_split(self) -> None:
        tag, root = split_anchor_payload(anchor_payload(ROOT))
        assert tag == ANCHOR_TAG
        assert root.hex() == ROOT

    def test_rejects_short_root(self) -> None:
        with pytest.raises(ValueError):
            anchor_payload("ab" * 16)


class TestTransaction:
    def test_serialize_parse(self) -> None:
        tx = _tx()
        parsed = Transaction.from_hex(tx.to_hex())
        assert parsed == tx
        assert parsed.txid == tx.txid

    def test_op_return_data(self) -> None:
        assert _tx().op_return_data() == anchor_payload(ROOT)

    def test_txid_is_reversed_double_sha(self) -> None:
        tx = _tx()
        assert len(tx.txid) == 64
        assert tx.txid != tx.serialize().hex()

    def test_unsigned_detection(self) -> None:
        tx = _tx()
        assert not tx.is_signed
        assert tx.with_script_sigs([b"\x01\x02"]).is_signed

    def test_with_script_sigs_requires_one_per_input(self) -> None:
        with pytest.raises(ValueError):
            _tx().with_script_sigs([])

    def test_signature_hash_depends_on_index_script(self) -> None:
        tx = Transaction(
            inputs=(TxIn(Outpoint("11" * 32, 0)), TxIn(Outpoint("22" * 32, 0))),
            outputs=_tx().outputs,
        )
        script = p2pkh_script(b"\x22" * 20)
        assert tx.signature_hash(0, script) != tx.signature_hash(1, script)
        with pytest.raises(IndexError):
            tx.signature_hash(2, script)

    def test_signature_hash_ignores_existing_script_sigs(self) -> None:
        tx = _tx()
        script = p2pkh_script(b"\x22" * 20)
        signed = tx.with_script_sigs([b"\xff"])
        assert tx.signature_hash(0, script) == signed.signature_hash(0, script)

    def test_deserialize_rejects_trailing_bytes(self) -> None:
        with pytest.raises(ValueError):
            Transaction.deserialize(_tx().serialize() + b"\x00")

    def test_deserialize_rejects_truncation(self) -> None:
        with pytest.raises(ValueError):
            Transaction.deserialize(_tx().serialize()[:-5])


class TestEncoding:
    @pytest.mark.parametrize("n, encoded", [
        (0, "00"), (252, "fc"), (253, "fdfd00"), (0x10000, "fe00000100"),
    ])
    def test_varint(self, n: int, encoded: str) -> None:
        assert encode_varint(n).hex() == encoded

    def test_der_round_trip_with_high_bit(self) -> None:
        r, s = 0x80 << 248, 0x7F
        der = encode_der_signature(r, s)
        assert der[4] == 0  # padded so r stays positive
        assert decode_der_signature(der) == (r, s)

    def test_der_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            decode_der_signature(b"\x31\x06\x02\x01\x01\x02\x01\x01")

    def test_estimate_size_grows_with_inputs(self) -> None:
        one = estimate_size(1, 1, 37)
        two = estimate_size(2, 1, 37)
        assert two - one == 148
        # Actual unsigned size plus a 107-byte scriptSig stays under the estimate.
        assert len(_tx().serialize()) + 107 <= one
