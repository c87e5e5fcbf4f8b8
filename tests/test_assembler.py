"""Tests for certificate assembly."""

import copy
import uuid

import pytest

from conftest import EPOCH, make_records
from certanchor.crypto.canonical import certificate_hash
from certanchor.errors import MissingFieldError
from certanchor.issuance.assembler import RUN_TIMESTAMP_FIELD, CertificateAssembler
from certanchor.issuance.roster import RosterStore
from certanchor.models.certificate import Template


def _entries(count: int = 3):
    return RosterStore().load(make_records(count))


class TestAssemble:
    def test_placeholders_filled(self, template: Template) -> None:
        entry = _entries(1)[0]
        cert = CertificateAssembler(template, EPOCH).assemble(entry)
        doc = cert.document
        assert doc["recipientProfile"]["name"] == entry.name
        assert doc["recipientProfile"]["publicKey"] == entry.public_key
        assert doc["recipient"]["identity"] == entry.identity
        assert doc["issuedOn"] == EPOCH
        assert doc["id"] == cert.certificate_id
        assert "${" not in str(doc)

    def test_identifier_is_uuid5_urn(self, template: Template) -> None:
        cert = CertificateAssembler(template, EPOCH).assemble(_entries(1)[0])
        assert cert.certificate_id.startswith("urn:uuid:")
        assert uuid.UUID(cert.uuid).version == 5

    def test_template_not_mutated(self, template: Template) -> None:
        before = copy.deepcopy(dict(template.document))
        CertificateAssembler(template, EPOCH).assemble(_entries(1)[0])
        assert dict(template.document) == before

    def test_missing_placeholder_value(self) -> None:
        doc = {
            "schemaVersion": "1.0",
            "id": "${certificateId}",
            "issuedOn": "${issuedOn}",
            "recipient": {"identity": "${identity}"},
            "recipientProfile": {"name": "${name}", "publicKey": "${publicKey}"},
            "badge": {"name": "X", "description": "${course}"},
        }
        with pytest.raises(MissingFieldError) as exc_info:
            CertificateAssembler(Template.from_dict(doc), EPOCH).assemble(_entries(1)[0])
        assert exc_info.value.fields == ("course",)

    def test_extra_column_fills_placeholder(self) -> None:
        doc = {
            "schemaVersion": "1.0",
            "recipient": {"identity": "${identity}"},
            "recipientProfile": {"name": "${name}", "publicKey": "${publicKey}"},
            "badge": {"name": "${course}"},
        }
        entry = RosterStore().load([dict(make_records(1)[0], course="Ledgers")])[0]
        cert = CertificateAssembler(Template.from_dict(doc), EPOCH).assemble(entry)
        assert cert.document["badge"]["name"] == "Ledgers"

    def test_run_timestamp_outside_hash(self, template: Template) -> None:
        entry = _entries(1)[0]
        plain = CertificateAssembler(template, EPOCH).assemble(entry)
        stamped = CertificateAssembler(template, EPOCH, stamp_run_time=True).assemble(entry)
        assert RUN_TIMESTAMP_FIELD in stamped.document
        assert certificate_hash(plain.document) == certificate_hash(stamped.document)


class TestIdempotence:
    def test_rerun_gives_identical_ids_and_content(self, template: Template) -> None:
        entries = _entries(5)
        first, _ = CertificateAssembler(template, EPOCH).assemble_batch(entries)
        second, _ = CertificateAssembler(template, EPOCH).assemble_batch(entries)
        assert [c.certificate_id for c in first] == [c.certificate_id for c in second]
        assert [c.document for c in first] == [c.document for c in second]

    def test_different_epoch_different_ids(self, template: Template) -> None:
        entry = _entries(1)[0]
        a = CertificateAssembler(template, EPOCH).certificate_id(entry)
        b = CertificateAssembler(template, "2027-01-01T00:00:00Z").certificate_id(entry)
        assert a != b

    def test_ids_unique_within_batch(self, template: Template) -> None:
        certs, _ = CertificateAssembler(template, EPOCH).assemble_batch(_entries(20))
        assert len({c.certificate_id for c in certs}) == 20


class TestAssembleBatch:
    def test_order_preserved_under_parallelism(self, template: Template) -> None:
        entries = _entries(50)
        certs, failures = CertificateAssembler(template, EPOCH).assemble_batch(entries, max_workers=8)
        assert failures == []
        assert [c.index for c in certs] == list(range(50))
        assert [c.recipient for c in certs] == entries

    def test_failure_isolated_to_entry(self) -> None:
        doc = {
            "schemaVersion": "1.0",
            "recipient": {"identity": "${identity}"},
            "recipientProfile": {"name": "${name}", "publicKey": "${publicKey}"},
            "badge": {"name": "${course}"},
        }
        records = make_records(3)
        records[0]["course"] = "Ledgers"
        records[2]["course"] = "Ledgers"
        entries = RosterStore().load(records)

        certs, failures = CertificateAssembler(Template.from_dict(doc), EPOCH).assemble_batch(entries)
        assert [c.index for c in certs] == [0, 2]
        assert len(failures) == 1
        assert failures[0].index == 1
        assert failures[0].identity == entries[1].identity
