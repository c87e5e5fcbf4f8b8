"""Tests for the local key wallet."""

import pytest
from eth_keys import keys

from conftest import ISSUER_KEY, StubUtxoSource, fresh_utxo
from certanchor.chain.transaction import (
    Transaction,
    TxIn,
    TxOut,
    anchor_payload,
    decode_der_signature,
    hash160,
    op_return_script,
)
from certanchor.chain.wallet import CURVE_ORDER, LocalKeyWallet
from certanchor.errors import InsufficientFundsError, SigningError


def _unsigned(wallet: LocalKeyWallet, count: int = 1) -> Transaction:
    utxos = [fresh_utxo() for _ in range(count)]
    return Transaction(
        inputs=tuple(TxIn(u.outpoint) for u in utxos),
        outputs=(
            TxOut(0, op_return_script(anchor_payload("cd" * 32))),
            TxOut(1000, wallet.change_script),
        ),
    )


def _split_script_sig(script_sig: bytes) -> tuple[bytes, bytes]:
    sig_len = script_sig[0]
    signature = script_sig[1:1 + sig_len]
    rest = script_sig[1 + sig_len:]
    return signature, rest[1:1 + rest[0]]


class TestKeys:
    def test_invalid_key_rejected_without_echo(self) -> None:
        with pytest.raises(SigningError) as exc_info:
            LocalKeyWallet("zz" * 32, StubUtxoSource([]))
        assert "zz" not in str(exc_info.value)

    def test_repr_hides_key(self) -> None:
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([]))
        assert ISSUER_KEY not in repr(wallet)

    def test_compressed_public_key(self) -> None:
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([]))
        assert len(wallet.public_key_hex) == 66
        assert wallet.public_key_hex[:2] in ("02", "03")
        assert wallet.pubkey_hash == hash160(bytes.fromhex(wallet.public_key_hex))

    def test_p2pkh_change_script(self) -> None:
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([]))
        assert wallet.change_script == bytes.fromhex("76a914" + wallet.pubkey_hash.hex() + "88ac")
        assert wallet.funding_key == wallet.change_script.hex()

    def test_generate(self) -> None:
        wallet, key_hex = LocalKeyWallet.generate()
        assert len(key_hex) == 64
        assert LocalKeyWallet(key_hex, None).public_key_hex == wallet.public_key_hex


class TestFunding:
    def test_largest_first(self) -> None:
        small, large = fresh_utxo(1_000), fresh_utxo(50_000)
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([small, large]))
        assert wallet.funding_inputs_for(10_000) == [large]

    def test_combines_inputs(self) -> None:
        utxos = [fresh_utxo(4_000), fresh_utxo(3_000), fresh_utxo(2_000)]
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource(utxos))
        assert len(wallet.funding_inputs_for(6_500)) == 2

    def test_excluded_outpoints_skipped(self) -> None:
        first, second = fresh_utxo(50_000), fresh_utxo(40_000)
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([first, second]))
        assert wallet.funding_inputs_for(1_000, exclude={first.outpoint}) == [second]

    def test_available_outpoints_include_unconfirmed(self) -> None:
        confirmed, pending = fresh_utxo(), fresh_utxo(confirmed=False)
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([confirmed, pending]))
        assert wallet.available_outpoints() == {confirmed.outpoint, pending.outpoint}

    def test_unconfirmed_skipped_by_default(self) -> None:
        pending = fresh_utxo(50_000, confirmed=False)
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([pending]))
        with pytest.raises(InsufficientFundsError):
            wallet.funding_inputs_for(1_000)
        relaxed = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([pending]), allow_unconfirmed=True)
        assert relaxed.funding_inputs_for(1_000) == [pending]

    def test_insufficient_funds_reports_amounts(self) -> None:
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([fresh_utxo(700)]))
        with pytest.raises(InsufficientFundsError) as exc_info:
            wallet.funding_inputs_for(1_000)
        assert exc_info.value.required == 1_000
        assert exc_info.value.available == 700


class TestSigning:
    def test_every_input_signed(self) -> None:
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([]))
        signed = wallet.sign(_unsigned(wallet, count=3))
        assert signed.is_signed
        assert len(signed.inputs) == 3

    def test_outputs_untouched(self) -> None:
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([]))
        unsigned = _unsigned(wallet)
        assert wallet.sign(unsigned).outputs == unsigned.outputs

    def test_signature_is_low_s_der_with_sighash_all(self) -> None:
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([]))
        signed = wallet.sign(_unsigned(wallet))
        signature, pubkey = _split_script_sig(signed.inputs[0].script_sig)
        assert signature[-1] == 0x01
        _, s = decode_der_signature(signature[:-1])
        assert s <= CURVE_ORDER // 2
        assert pubkey.hex() == wallet.public_key_hex

    def test_signature_verifies_against_sighash(self) -> None:
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([]))
        unsigned = _unsigned(wallet)
        signed = wallet.sign(unsigned)
        signature, _ = _split_script_sig(signed.inputs[0].script_sig)
        r, s = decode_der_signature(signature[:-1])
        digest = unsigned.signature_hash(0, wallet.change_script)

        expected = keys.PrivateKey(bytes.fromhex(ISSUER_KEY)).public_key
        recovered = [
            keys.Signature(vrs=(v, r, s)).recover_public_key_from_msg_hash(digest)
            for v in (0, 1)
        ]
        assert expected in recovered

    def test_deterministic(self) -> None:
        wallet = LocalKeyWallet(ISSUER_KEY, StubUtxoSource([]))
        unsigned = _unsigned(wallet)
        assert wallet.sign(unsigned) == wallet.sign(unsigned)
