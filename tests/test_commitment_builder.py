"""Tests for the batch commitment builder."""

import pytest

from conftest import EPOCH, make_records
from certanchor.crypto.canonical import certificate_hash
from certanchor.crypto.commitment_builder import CommitmentBuilder, commit
from certanchor.crypto.merkle import verify_proof
from certanchor.errors import EmptyBatchError, EncodingError
from certanchor.issuance.assembler import CertificateAssembler
from certanchor.issuance.roster import RosterStore
from certanchor.models.certificate import Template, UnsignedCertificate


def _certificates(template: Template, count: int) -> list[UnsignedCertificate]:
    entries = RosterStore().load(make_records(count))
    certs, _ = CertificateAssembler(template, EPOCH).assemble_batch(entries)
    return certs


class TestCommitmentBuilder:
    def test_empty_batch(self) -> None:
        with pytest.raises(EmptyBatchError):
            CommitmentBuilder().build()

    def test_leaves_in_roster_order(self, template: Template) -> None:
        certs = _certificates(template, 12)
        commitment = commit(certs, max_workers=6)
        assert list(commitment.leaves) == [certificate_hash(c.document) for c in certs]

    def test_one_proof_per_certificate(self, template: Template) -> None:
        certs = _certificates(template, 5)
        commitment = commit(certs)
        assert len(commitment.proofs) == 5
        for cert, proof in zip(certs, commitment.proofs):
            assert proof.leaf_hash == certificate_hash(cert.document)
            assert verify_proof(proof.leaf_hash, proof.path, commitment.root)

    def test_deterministic(self, template: Template) -> None:
        certs = _certificates(template, 7)
        assert commit(certs).root == commit(certs, max_workers=1).root

    def test_single_certificate_root_is_its_leaf(self, template: Template) -> None:
        certs = _certificates(template, 1)
        commitment = commit(certs)
        assert commitment.root == certificate_hash(certs[0].document)
        assert commitment.proofs[0].path == ()

    def test_content_change_changes_root(self, template: Template) -> None:
        certs = _certificates(template, 3)
        root = commit(certs).root
        doc = dict(certs[1].document)
        doc["issuedOn"] = "2030-01-01T00:00:00Z"
        altered = list(certs)
        altered[1] = UnsignedCertificate(certs[1].certificate_id, 1, certs[1].recipient, doc)
        assert commit(altered).root != root

    def test_encoding_failures_reported_together(self, template: Template) -> None:
        certs = _certificates(template, 3)
        broken = []
        for cert in certs:
            doc = dict(cert.document)
            if cert.index != 1:
                doc["badge"] = None
            broken.append(UnsignedCertificate(cert.certificate_id, cert.index, cert.recipient, doc))
        with pytest.raises(EncodingError) as exc_info:
            commit(broken)
        assert certs[0].certificate_id in str(exc_info.value)
        assert certs[2].certificate_id in str(exc_info.value)
